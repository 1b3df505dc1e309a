"""
Update Checker Service

Scans every container known to the runtime and selects the ones whose
image has a newer remote version.
"""

import logging
from typing import Any, List

import docker
from sqlalchemy.exc import SQLAlchemyError

from config.settings import ScannerConfig
from docker_monitor.container_discovery import build_container_record, list_container_ids
from notifications import Notifications
from updates.freshness_cache import FreshnessCache
from updates.registry_adapter import RegistryError
from updates.types import UpdateCandidate
from utils.async_docker import async_docker_call
from utils.image_reference import InvalidReferenceError, RepositoryNotTaggedError

logger = logging.getLogger(__name__)


class UpdateChecker:
    """
    Service that selects containers for update.

    Workflow:
    1. List all containers (stopped ones included)
    2. For each container:
       - Build a ContainerRecord (digest-pinned images are skipped)
       - Apply the inclusion policy (self, stopped, yacu.enable, scan_all)
       - Skip images younger than min_image_age
       - Ask the freshness cache whether the registry holds a newer image
    """

    def __init__(self, client: Any, cache: FreshnessCache, notifications: Notifications,
                 scanner: ScannerConfig, stop_timeout: int):
        self.client = client
        self.cache = cache
        self.notifications = notifications
        self.scanner = scanner
        self.stop_timeout = stop_timeout

    async def fetch_updates(self) -> List[UpdateCandidate]:
        """
        Scan all containers and return the update candidates.

        Raises:
            docker.errors.DockerException: Listing or inspecting containers failed
        """
        container_ids = await list_container_ids(self.client)
        logger.debug(f"Scanning {len(container_ids)} container(s)")

        candidates = []
        for container_id in container_ids:
            try:
                attrs = await async_docker_call(self.client.api.inspect_container, container_id)
                container = await build_container_record(
                    self.client, attrs, self.stop_timeout, self.scanner.image_age
                )
            except RepositoryNotTaggedError:
                # Digest-pinned images have no updates
                continue
            except InvalidReferenceError as e:
                logger.warning(f"Skipping container {container_id[:12]}: {e}")
                continue
            except docker.errors.NotFound:
                logger.debug(f"Container {container_id[:12]} disappeared during scan")
                continue

            if not container.should_scan(self.scanner.scan_all, self.scanner.scan_stopped,
                                         self.scanner.self_repository):
                continue

            if not container.is_outdated():
                logger.debug(f"Image of container {container.name} is younger than "
                             f"{container.min_image_age} day(s)")
                continue

            try:
                pullable = await self.cache.is_remote_pullable(container)
            except (RegistryError, SQLAlchemyError) as e:
                logger.error(f"Checking {container.familiar_reference} for container {container.name} failed: {e}")
                await self.notifications.image_error(container.image, "Unable to check for a newer image", e)
                continue

            if pullable:
                logger.info(f"Container {container.name} ({container.familiar_reference}) has a newer image")
                candidates.append(UpdateCandidate(container=container, reference=container.reference))

        return candidates
