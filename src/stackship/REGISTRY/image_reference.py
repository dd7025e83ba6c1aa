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
Image reference parsing.
Parses references like 'postgres:16', 'ghcr.io/acme/backend:latest' or
'registry.example.com:5000/acme/frontend@sha256:...'.
"""

from typing import Optional
from dataclasses import dataclass, replace


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - postgres -> docker.io/library/postgres:latest
        - acme/backend:v2 -> docker.io/acme/backend:v2
        - ghcr.io/acme/frontend:latest -> ghcr.io/acme/frontend:latest
        - ghcr.io/acme/frontend@sha256:abc -> ghcr.io/acme/frontend@sha256:abc
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string.

        Returns:
            Parsed ImageReference.

        Raises:
            ValueError: If the reference is empty or malformed.
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValueError("Empty image reference")
        if any(ch.isspace() for ch in reference):
            raise ValueError(f"Invalid image reference: {reference!r}")

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)
            if ":" not in digest:
                raise ValueError(f"Invalid digest in image reference: {digest!r}")

        tag = None
        last_colon = reference.rfind(":")
        # A colon followed by a slash belongs to a registry port (localhost:5000/app).
        if last_colon > 0 and "/" not in reference[last_colon + 1:]:
            tag = reference[last_colon + 1:]
            reference = reference[:last_colon]
            if not tag:
                raise ValueError("Empty tag in image reference")

        parts = reference.split("/")
        first = parts[0]
        if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
            registry = first
            repository = "/".join(parts[1:])
        else:
            registry = cls.DEFAULT_REGISTRY
            repository = reference if len(parts) > 1 else f"library/{reference}"

        if not repository:
            raise ValueError("Empty repository in image reference")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @property
    def full_name(self) -> str:
        """Full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.tag:
            name = f"{name}:{self.tag}"
        if self.digest:
            name = f"{name}@{self.digest}"
        return name

    @property
    def short_name(self) -> str:
        """Image name without the default registry and 'library/' prefix."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[len("library/"):]
        if self.tag:
            repo = f"{repo}:{self.tag}"
        if self.digest:
            repo = f"{repo}@{self.digest}"
        return repo

    @property
    def is_mutable(self) -> bool:
        """
        True when the reference names a tag rather than content. Two pulls of a
        mutable reference at different times may yield different images.
        """
        return self.digest is None

    def pinned(self, digest: str) -> "ImageReference":
        """
        The same image addressed by content digest.
        """
        return replace(self, digest=digest)

    def __str__(self) -> str:
        return self.short_name

    def __repr__(self) -> str:
        return f"ImageReference({self.full_name})"
