"""
Freshness cache for remote image state.

Keeps registry traffic low: the remote state of every tagged image is
persisted in the remote_images table, and the registry is only asked again
once the cached state is old enough to matter.

The per-container min_image_age serves two purposes here, and the two
checks are kept separate:
- update floor: an image younger than min_image_age days is never pulled
- recheck window: the registry is not asked again until last_check is at
  least min_image_age days old
"""

import logging
from datetime import datetime
from typing import Any, Iterable

import docker

from database import DatabaseManager
from updates.registry_adapter import RegistryAdapter, RemoteImageData
from updates.types import ContainerRecord, ImageRecord
from utils.async_docker import async_docker_call
from utils.image_reference import ImageReference
from utils.registry_credentials import get_registry_credentials, is_insecure_registry
from utils.time_utils import days_passed

logger = logging.getLogger(__name__)


class FreshnessCache:
    """Decides whether a container's image has a newer remote version worth pulling."""

    def __init__(self, db: DatabaseManager, registry: RegistryAdapter, registries: Iterable = ()):
        self.db = db
        self.registry = registry
        self.registries = list(registries or [])

    @staticmethod
    def _is_too_young(created: datetime, min_image_age: int) -> bool:
        """Update floor: image younger than min_image_age days."""
        return days_passed(created) < min_image_age

    @staticmethod
    def _is_recheck_due(last_check: datetime, min_image_age: int) -> bool:
        """Recheck window: last registry lookup at least min_image_age days ago."""
        return days_passed(last_check) >= min_image_age

    async def _fetch_remote(self, container: ContainerRecord) -> RemoteImageData:
        reference = container.reference
        auth = get_registry_credentials(self.registries, reference.domain)
        insecure = is_insecure_registry(self.registries, reference.domain)
        # Manifest lists resolve to the platform of the image the container runs
        return await self.registry.fetch_remote_image_data(
            reference, auth=auth, insecure=insecure, platform=container.image.platform
        )

    def _is_newer(self, container: ContainerRecord, remote: RemoteImageData) -> bool:
        if self._is_too_young(remote.created, container.min_image_age):
            return False
        # Locally built images have no repo digest and always differ
        if container.image.repo_digest == remote.digest:
            return False
        return True

    async def is_remote_pullable(self, container: ContainerRecord) -> bool:
        """
        Check whether the registry holds a newer image for the container.

        Raises:
            RegistryError: Registry lookup failed
            SQLAlchemyError: Row store read or write failed
        """
        name = container.reference.familiar_tagged
        domain = container.reference.domain

        row = self.db.get_remote_image(name)
        if row is None:
            logger.debug(f"No cached remote state for {name}, querying registry")
            remote = await self._fetch_remote(container)
            self.db.save_remote_image(name, domain, remote.created, remote.digest)
            outdated = self._is_newer(container, remote)
        elif self._is_too_young(row.created, container.min_image_age):
            logger.debug(f"Cached image {name} is younger than {container.min_image_age} day(s)")
            return False
        elif not self._is_recheck_due(row.last_check, container.min_image_age):
            logger.debug(f"Registry check for {name} not due yet (last check {row.last_check.isoformat()})")
            return False
        else:
            logger.debug(f"Rechecking registry for {name}")
            remote = await self._fetch_remote(container)
            self.db.update_remote_image(row.row_id, remote.created, remote.digest)
            self.db.update_remote_image_check(row.row_id)
            outdated = self._is_newer(container, remote)

        if outdated:
            logger.debug(f"Image {name} of container {container.name} added to update queue")
        else:
            logger.debug(f"Image {name} of container {container.name} up to date")
        return outdated

    async def is_latest_image_present(self, client: Any, reference: ImageReference) -> bool:
        """
        Check whether the locally held image for the reference matches the cached remote state.

        Several containers can share one repository; after the first pull the
        others find the image already present.
        """
        try:
            attrs = await async_docker_call(client.api.inspect_image, str(reference))
        except docker.errors.NotFound:
            return False

        row = self.db.get_remote_image(reference.familiar_tagged)
        if row is None:
            return False

        image = ImageRecord.from_inspect(attrs, reference)
        if image.created == row.created:
            return True

        return image.has_repo_digest(row.digest)
