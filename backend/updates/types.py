"""
Shared types for the update pipeline.

Records are built fresh from runtime inspect calls every time a container or
image is read and never mutated afterwards. A recreated container is a new
ContainerRecord with a new identity.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from utils.image_id import id_encoded, short_id
from utils.image_reference import ImageReference, InvalidReferenceError, parse_image_reference
from utils.labels import LABEL_ENABLE, LABEL_IMAGE_AGE, LABEL_STOP_TIMEOUT, label_int, parse_bool
from utils.time_utils import days_passed, parse_docker_timestamp


class DependencyCondition(Enum):
    """Condition a dependent waits for before it is started again."""
    STARTED = "started"
    COMPLETED = "completed"
    HEALTHY = "healthy"

    @classmethod
    def from_compose(cls, value: Optional[str]) -> 'DependencyCondition':
        """Map a compose depends_on condition; unknown or missing means healthy."""
        if value == "service_started":
            return cls.STARTED
        if value == "service_completed_successfully":
            return cls.COMPLETED
        return cls.HEALTHY


def _matching_repo_digest(repo_digests: Tuple[str, ...], reference: ImageReference) -> Optional[str]:
    """Digest of the name@digest entry belonging to the reference's repository."""
    for entry in repo_digests:
        name, sep, digest = entry.partition("@")
        if not sep:
            continue
        try:
            parsed = parse_image_reference(name)
        except InvalidReferenceError:
            continue
        if parsed.repository == reference.repository:
            return digest
    return None


@dataclass(frozen=True)
class ImageRecord:
    """Locally held image resolved against a tagged reference."""
    id: str
    created: datetime
    reference: ImageReference
    repo_digest: Optional[str] = None
    repo_digests: Tuple[str, ...] = ()
    os: Optional[str] = None
    architecture: Optional[str] = None
    variant: Optional[str] = None

    @classmethod
    def from_inspect(cls, attrs: Dict[str, Any], reference: ImageReference) -> 'ImageRecord':
        repo_digests = tuple(attrs.get("RepoDigests") or ())
        return cls(
            id=attrs["Id"],
            created=parse_docker_timestamp(attrs["Created"]),
            reference=reference,
            repo_digest=_matching_repo_digest(repo_digests, reference),
            repo_digests=repo_digests,
            os=attrs.get("Os") or None,
            architecture=attrs.get("Architecture") or None,
            variant=attrs.get("Variant") or None,
        )

    @property
    def platform(self) -> Optional[str]:
        """os/architecture[/variant] of the local image, None when unknown."""
        if not self.architecture:
            return None
        platform = f"{self.os or 'linux'}/{self.architecture}"
        if self.variant:
            platform += f"/{self.variant}"
        return platform

    @property
    def short_id(self) -> str:
        return short_id(self.id)

    @property
    def encoded_id(self) -> str:
        return id_encoded(self.id)

    def has_repo_digest(self, digest: Optional[str]) -> bool:
        """True if any RepoDigests entry contains the digest."""
        if not digest:
            return False
        return any(digest in entry for entry in self.repo_digests)


@dataclass(frozen=True)
class ContainerRecord:
    """
    Container read from a runtime inspect call.

    stop_timeout and min_image_age are resolved once from the global defaults,
    overridden by the yacu.stop_timeout / yacu.image_age labels when present
    and parseable.
    """
    id: str
    name: str
    image: ImageRecord
    reference: ImageReference
    stop_timeout: int
    min_image_age: int
    labels: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)
    attrs: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @classmethod
    def from_inspect(
        cls,
        attrs: Dict[str, Any],
        image: ImageRecord,
        reference: ImageReference,
        stop_timeout: int,
        min_image_age: int,
    ) -> 'ContainerRecord':
        labels = (attrs.get("Config") or {}).get("Labels") or {}
        return cls(
            id=attrs["Id"],
            name=(attrs.get("Name") or "").lstrip("/"),
            image=image,
            reference=reference,
            stop_timeout=label_int(labels, LABEL_STOP_TIMEOUT, stop_timeout),
            min_image_age=label_int(labels, LABEL_IMAGE_AGE, min_image_age),
            labels=dict(labels),
            attrs=attrs,
        )

    @property
    def short_id(self) -> str:
        return short_id(self.id)

    @property
    def familiar_reference(self) -> str:
        return self.reference.familiar_tagged

    @property
    def is_running(self) -> bool:
        return (self.attrs.get("State") or {}).get("Status") == "running"

    @property
    def networks(self) -> Dict[str, Any]:
        return (self.attrs.get("NetworkSettings") or {}).get("Networks") or {}

    @property
    def is_host_network(self) -> bool:
        return (self.attrs.get("HostConfig") or {}).get("NetworkMode") == "host"

    def is_self(self, self_repository: str) -> bool:
        """True if this container runs the updater's own image."""
        return bool(self_repository) and self.reference.path.startswith(self_repository)

    def should_scan(self, scan_all: bool, scan_stopped: bool, self_repository: str) -> bool:
        """
        Apply the inclusion policy in order: self-exclusion, stopped containers,
        the yacu.enable label, then the global scan_all flag.
        """
        if self.is_self(self_repository):
            return False

        if not scan_stopped and not self.is_running:
            return False

        if LABEL_ENABLE in self.labels:
            try:
                return parse_bool(self.labels[LABEL_ENABLE])
            except ValueError:
                return False

        return scan_all

    def is_outdated(self, now: Optional[datetime] = None) -> bool:
        """Image is old enough to be considered for an update."""
        return days_passed(self.image.created, now) >= self.min_image_age


@dataclass(frozen=True)
class UpdateCandidate:
    """Container selected for update in the current batch."""
    container: ContainerRecord
    reference: ImageReference


class ImageSet:
    """Images replaced during a batch, deduplicated by image ID."""

    def __init__(self):
        self._images: Dict[str, ImageRecord] = {}

    def add(self, image: ImageRecord) -> None:
        self._images.setdefault(image.id, image)

    def __iter__(self) -> Iterator[ImageRecord]:
        return iter(list(self._images.values()))

    def __len__(self) -> int:
        return len(self._images)


@dataclass
class BatchResult:
    """Totals of one scan/update/reclaim cycle."""
    candidates: int = 0
    successful: int = 0
    failed: int = 0
    images_removed: int = 0
    updated: List[str] = field(default_factory=list)
