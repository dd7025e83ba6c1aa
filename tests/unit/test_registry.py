# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for the registry module.
"""
import pytest
from stackship.MODELS.service_definition import ServiceSpec
from stackship.REGISTRY.image_reference import ImageReference
from stackship.REGISTRY.registry_client import ImageRegistryClient, classify_pull_failure
from stackship.RUNNERS.container_runtime import CommandResult
from stackship.errors import AuthRequired, ImageNotFound, RegistryUnavailable


class TestImageReference:
    """Tests for ImageReference parsing."""

    def test_parse_simple_name(self):
        ref = ImageReference.parse("postgres")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/postgres"
        assert ref.tag == "latest"

    def test_parse_with_tag(self):
        ref = ImageReference.parse("postgres:16")
        assert ref.repository == "library/postgres"
        assert ref.tag == "16"

    def test_parse_user_image(self):
        ref = ImageReference.parse("acme/backend:v1")
        assert ref.registry == "docker.io"
        assert ref.repository == "acme/backend"
        assert ref.tag == "v1"

    def test_parse_full_reference(self):
        ref = ImageReference.parse("ghcr.io/acme/team/frontend:latest")
        assert ref.registry == "ghcr.io"
        assert ref.repository == "acme/team/frontend"
        assert ref.tag == "latest"

    def test_parse_with_digest(self):
        ref = ImageReference.parse("postgres@sha256:abc123")
        assert ref.repository == "library/postgres"
        assert ref.digest == "sha256:abc123"
        assert ref.tag is None
        assert not ref.is_mutable

    def test_parse_tag_and_digest(self):
        ref = ImageReference.parse("ghcr.io/acme/backend:latest@sha256:abc")
        assert ref.tag == "latest"
        assert ref.digest == "sha256:abc"
        assert ref.full_name == "ghcr.io/acme/backend:latest@sha256:abc"

    def test_parse_localhost_registry(self):
        ref = ImageReference.parse("localhost:5000/backend:v1")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "backend"
        assert ref.tag == "v1"

    def test_registry_port_without_tag(self):
        ref = ImageReference.parse("registry.example.com:5000/acme/backend")
        assert ref.registry == "registry.example.com:5000"
        assert ref.tag == "latest"

    def test_full_and_short_name(self):
        ref = ImageReference.parse("postgres:16")
        assert ref.full_name == "docker.io/library/postgres:16"
        assert ref.short_name == "postgres:16"
        assert str(ref) == "postgres:16"

    def test_latest_is_mutable(self):
        assert ImageReference.parse("ghcr.io/acme/backend").is_mutable

    def test_pinned(self):
        ref = ImageReference.parse("ghcr.io/acme/backend:latest").pinned("sha256:feed")
        assert ref.digest == "sha256:feed"
        assert not ref.is_mutable

    @pytest.mark.parametrize("bad", ["", "   ", "postgres:", "acme/back end", "postgres@abc"])
    def test_invalid_references_raise(self, bad):
        with pytest.raises(ValueError):
            ImageReference.parse(bad)


class TestClassifyPullFailure:
    """Engine output is mapped onto the pull error taxonomy."""

    @pytest.mark.parametrize("stderr,expected", [
        ("Error response from daemon: manifest for acme/app:v9 not found: manifest unknown", ImageNotFound),
        ("Error response from daemon: pull access denied for acme/app, repository does not exist "
         "or may require 'docker login'", AuthRequired),
        ("Error response from daemon: Head \"https://ghcr.io/v2/acme/app/manifests/latest\": unauthorized", AuthRequired),
        ("Error response from daemon: Get \"https://registry-1.docker.io/v2/\": dial tcp: "
         "lookup registry-1.docker.io: no such host", RegistryUnavailable),
        ("Error response from daemon: Get \"https://ghcr.io/v2/\": net/http: TLS handshake timeout", RegistryUnavailable),
        ("something nobody anticipated", RegistryUnavailable),
    ])
    def test_classification(self, stderr, expected):
        error = classify_pull_failure("backend", "acme/app", CommandResult(1, "", stderr))
        assert isinstance(error, expected)
        assert error.service == "backend"


class TestImageRegistryClient:
    """Tests for ImageRegistryClient.pull."""

    def test_pull_reports_change(self, runtime):
        client = ImageRegistryClient(runtime)
        result = client.pull(ServiceSpec(name="db", image="postgres:16"))
        assert result.changed
        assert result.image_id == "sha256:db1"

    def test_repull_is_a_freshness_check(self, runtime):
        client = ImageRegistryClient(runtime)
        spec = ServiceSpec(name="db", image="postgres:16")
        client.pull(spec)
        again = client.pull(spec)
        assert not again.changed
        assert runtime.ops("pull") == ["postgres:16", "postgres:16"]

    def test_pull_overwrites_moved_tag(self, runtime):
        client = ImageRegistryClient(runtime)
        spec = ServiceSpec(name="db", image="postgres:16")
        client.pull(spec)
        runtime.registry["postgres:16"] = "sha256:db2"
        result = client.pull(spec)
        assert result.changed
        assert runtime.image_id("postgres:16") == "sha256:db2"

    def test_missing_tag_raises_image_not_found(self, runtime):
        client = ImageRegistryClient(runtime)
        with pytest.raises(ImageNotFound):
            client.pull(ServiceSpec(name="db", image="postgres:99"))

    def test_malformed_reference_raises_image_not_found(self, runtime):
        client = ImageRegistryClient(runtime)
        with pytest.raises(ImageNotFound):
            client.pull(ServiceSpec(name="db", image="postgres:"))
        assert runtime.ops("pull") == []

    def test_login_once_per_registry(self, runtime):
        client = ImageRegistryClient(runtime)
        client.login("ghcr.io", "ci", "hunter2")
        client.login("ghcr.io", "ci", "hunter2")
        assert runtime.logins == [("ghcr.io", "ci")]
