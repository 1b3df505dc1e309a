"""
Image reference parsing.

Normalizes image references the same way the Docker daemon does:
    nginx                      -> docker.io/library/nginx:latest
    nginx:1.25                 -> docker.io/library/nginx:1.25
    ghcr.io/user/app:v1        -> ghcr.io/user/app:v1
    localhost:5000/app         -> localhost:5000/app:latest
    nginx@sha256:abc...        -> digest pinned, no tag (cannot be updated)

The "familiar" form drops the default docker.io domain and the library/
prefix, which is how users write references and how the freshness cache
keys its rows ("nginx:latest", "ghcr.io/user/app:v1").
"""

import re
from dataclasses import dataclass
from typing import Optional

DEFAULT_DOMAIN = "docker.io"
LEGACY_DEFAULT_DOMAIN = "index.docker.io"
OFFICIAL_REPO_PREFIX = "library/"
DEFAULT_TAG = "latest"

_PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_PATH_RE = re.compile(rf"^{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$")
_IMAGE_ID_RE = re.compile(r"^(?:sha256:)?[a-f0-9]{64}$")


class InvalidReferenceError(ValueError):
    """Image reference cannot be parsed."""


class RepositoryNotTaggedError(ValueError):
    """Image reference is pinned to a digest and carries no tag."""


@dataclass(frozen=True)
class ImageReference:
    """Normalized image reference."""

    domain: str
    path: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def repository(self) -> str:
        """Fully qualified repository name (docker.io/library/nginx)."""
        return f"{self.domain}/{self.path}"

    @property
    def familiar_name(self) -> str:
        """Repository name as users write it (nginx, ghcr.io/user/app)."""
        if self.domain != DEFAULT_DOMAIN:
            return self.repository
        path = self.path
        if path.startswith(OFFICIAL_REPO_PREFIX) and path.count("/") == 1:
            path = path[len(OFFICIAL_REPO_PREFIX):]
        return path

    @property
    def familiar_tagged(self) -> str:
        """Familiar repository name with its tag (nginx:latest)."""
        return f"{self.familiar_name}:{self.tag}"

    @property
    def is_tagged(self) -> bool:
        return self.tag is not None

    def __str__(self) -> str:
        value = self.repository
        if self.tag:
            value += f":{self.tag}"
        if self.digest:
            value += f"@{self.digest}"
        return value


def _split_domain(name: str):
    index = name.find("/")
    if index == -1:
        return DEFAULT_DOMAIN, name

    first = name[:index]
    if "." not in first and ":" not in first and first != "localhost" and first.lower() == first:
        return DEFAULT_DOMAIN, name

    domain, remainder = first, name[index + 1:]
    if domain == LEGACY_DEFAULT_DOMAIN:
        domain = DEFAULT_DOMAIN
    return domain, remainder


def parse_image_reference(value: str) -> ImageReference:
    """
    Parse and normalize an image reference.

    A reference without tag and without digest gets the "latest" tag. A
    digest-only reference keeps tag=None.

    Raises:
        InvalidReferenceError: If the value is empty, an image ID, or malformed
    """
    if not value or not value.strip():
        raise InvalidReferenceError("image reference is empty")

    value = value.strip()
    if _IMAGE_ID_RE.match(value):
        raise InvalidReferenceError(f"'{value}' is an image ID, not a repository reference")

    digest = None
    if "@" in value:
        value, digest = value.split("@", 1)
        if not _DIGEST_RE.match(digest):
            raise InvalidReferenceError(f"invalid digest '{digest}'")

    domain, remainder = _split_domain(value)

    tag = None
    last_slash = remainder.rfind("/")
    colon = remainder.rfind(":")
    if colon > last_slash:
        remainder, tag = remainder[:colon], remainder[colon + 1:]
        if not _TAG_RE.match(tag):
            raise InvalidReferenceError(f"invalid tag '{tag}'")

    if domain == DEFAULT_DOMAIN and "/" not in remainder:
        remainder = OFFICIAL_REPO_PREFIX + remainder

    if not _PATH_RE.match(remainder):
        raise InvalidReferenceError(f"invalid repository name '{remainder}'")

    if tag is None and digest is None:
        tag = DEFAULT_TAG

    return ImageReference(domain=domain, path=remainder, tag=tag, digest=digest)


def parse_tagged_reference(value: str) -> ImageReference:
    """
    Parse a reference that must carry a tag.

    Raises:
        RepositoryNotTaggedError: If the reference is pinned to a digest only
        InvalidReferenceError: If the reference is malformed
    """
    reference = parse_image_reference(value)
    if not reference.is_tagged:
        raise RepositoryNotTaggedError(f"repository '{value}' is not tagged")
    return reference
