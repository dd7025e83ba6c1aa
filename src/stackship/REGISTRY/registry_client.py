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
Registry client for pulling service images onto the deployment host.
The engine does the transfer; this module classifies its failures.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .image_reference import ImageReference
from ..MODELS.service_definition import ServiceSpec
from ..RUNNERS.container_runtime import CommandResult, DockerRuntime
from ..errors import AuthRequired, ImageNotFound, RegistryUnavailable, StackshipError

logger = logging.getLogger(__name__)

# Substrings of engine output, matched case-insensitively.
_NOT_FOUND_MARKERS = (
    "manifest unknown",
    "not found",
    "no such image",
    "does not exist",
)
_AUTH_MARKERS = (
    "unauthorized",
    "authentication required",
    "denied",
    "no basic auth credentials",
    "incorrect username or password",
)
_UNAVAILABLE_MARKERS = (
    "could not resolve host",
    "no such host",
    "connection refused",
    "i/o timeout",
    "timed out",
    "tls handshake timeout",
    "service unavailable",
    "network is unreachable",
    "cannot connect to the docker daemon",
)


@dataclass
class PullResult:
    """Outcome of pulling one service's image."""

    service: str
    image: str
    image_id: Optional[str]
    changed: bool


def classify_pull_failure(service: str, image: str, result: CommandResult) -> StackshipError:
    """
    Maps a failed pull to RegistryUnavailable, AuthRequired or ImageNotFound.
    Unrecognised failures count as the registry being unavailable.
    """
    text = f"{result.stderr}\n{result.stdout}".lower()
    detail = result.detail
    # Registries answer "pull access denied ... may require 'docker login'"
    # for both private and missing repositories; a missing tag is explicit.
    if "manifest unknown" in text or ("manifest for" in text and "not found" in text):
        return ImageNotFound(f"{image}: {detail}", service=service)
    if any(marker in text for marker in _AUTH_MARKERS):
        return AuthRequired(f"{image}: {detail}", service=service)
    if any(marker in text for marker in _UNAVAILABLE_MARKERS):
        return RegistryUnavailable(f"{image}: {detail}", service=service)
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return ImageNotFound(f"{image}: {detail}", service=service)
    return RegistryUnavailable(f"{image}: {detail}", service=service)


class ImageRegistryClient:
    """
    Pulls service images into the engine's local image store.
    """

    def __init__(self, runtime: DockerRuntime):
        """
        Args:
            runtime: Engine used to pull and inspect images.
        """
        self.runtime = runtime
        self._logged_in: Dict[str, str] = {}

    def login(self, registry: str, username: str, password: str) -> None:
        """
        Authenticate the engine against a registry.

        The password is handed over on stdin and never appears in argv or logs.

        Raises:
            AuthRequired: If the registry rejects the credentials.
            RegistryUnavailable: If the registry cannot be reached.
        """
        if self._logged_in.get(registry) == username:
            return
        result = self.runtime.login(registry, username, password)
        if not result.ok:
            error = classify_pull_failure("", registry, result)
            if isinstance(error, ImageNotFound):
                error = AuthRequired(f"{registry}: {result.detail}")
            raise error
        logger.info("Logged in to %s as %s", registry, username)
        self._logged_in[registry] = username

    def pull(self, service: ServiceSpec) -> PullResult:
        """
        Pull the image of a service, replacing any cached image with the same tag.

        Re-pulling an image that is already current only costs a freshness check;
        ``changed`` reports whether the local image actually moved.

        Raises:
            ImageNotFound: If the image reference is malformed or the tag does not exist.
            RegistryUnavailable, AuthRequired: If the pull fails.
        """
        try:
            ref = ImageReference.parse(service.image)
        except ValueError as e:
            raise ImageNotFound(f"{service.image!r}: {e}", service=service.name)
        image = service.image
        if ref.is_mutable and ref.tag == ImageReference.DEFAULT_TAG:
            logger.warning(
                "Service %s uses mutable tag %s; the deployed image is not reproducible",
                service.name, ref.short_name,
            )

        before = self.runtime.image_id(image)
        logger.info("Pulling %s for service %s", ref.short_name, service.name)
        result = self.runtime.pull(image)
        if not result.ok:
            raise classify_pull_failure(service.name, image, result)

        after = self.runtime.image_id(image)
        changed = after != before
        logger.info(
            "Image %s %s (%s)",
            ref.short_name, "updated" if changed else "already current", after or "unknown id",
        )
        return PullResult(service=service.name, image=image, image_id=after, changed=changed)
