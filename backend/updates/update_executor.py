"""
Update Executor Service

Handles the execution of container updates, one candidate at a time:
1. Pull new image (once per repository)
2. Stop dependents and the old container
3. Remove old container
4. Recreate container with same config on a single network
5. Reconnect remaining networks
6. Start new container and its dependents

There is no rollback: a failed step leaves the container in whatever state
the last successful step produced, and the batch moves on.
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple

from config.settings import UpdaterConfig
from docker_monitor.container_discovery import inspect_container_record
from notifications import Notifications
from updates.dependency_analyzer import DependencyResolver
from updates.freshness_cache import FreshnessCache
from updates.image_cleanup import ImageCleanup
from updates.types import BatchResult, ContainerRecord, ImageRecord, ImageSet, UpdateCandidate
from utils.async_docker import async_docker_call
from utils.network_helpers import connect_remaining_networks, networking_config, select_primary_network
from utils.registry_credentials import get_registry_credentials

logger = logging.getLogger(__name__)

START_ATTEMPTS = 3
START_RETRY_DELAY = 1


class UpdateStepError(Exception):
    """A step of a container update failed"""

    def __init__(self, context: str, cause: BaseException):
        super().__init__(f"{context}: {cause}")
        self.context = context
        self.cause = cause


async def _step(context: str, awaitable: Awaitable) -> Any:
    try:
        return await awaitable
    except UpdateStepError:
        raise
    except Exception as e:
        raise UpdateStepError(context, e) from e


class UpdateExecutor:
    """
    Service that recreates outdated containers.

    Candidates are processed strictly sequentially. A failure of one
    candidate is reported and never prevents processing the rest.
    """

    def __init__(
        self,
        client: Any,
        cache: FreshnessCache,
        notifications: Notifications,
        cleanup: ImageCleanup,
        updater: UpdaterConfig,
        image_age: int,
        registries: Iterable = (),
        resolver: Optional[DependencyResolver] = None,
        sleep=asyncio.sleep,
    ):
        self.client = client
        self.cache = cache
        self.notifications = notifications
        self.cleanup = cleanup
        self.updater = updater
        self.image_age = image_age
        self.registries = list(registries or [])
        self.resolver = resolver or DependencyResolver(client, updater.stop_timeout)
        self.sleep = sleep

    async def execute_updates(self, candidates: List[UpdateCandidate]) -> BatchResult:
        """
        Update all candidates, then reclaim replaced images if configured.

        Returns:
            BatchResult with candidate, success, failure and removal counts
        """
        result = BatchResult(candidates=len(candidates))
        if not candidates:
            return result

        pull_errors = await self._pull_images(candidates)

        replaced = ImageSet()
        for candidate in candidates:
            container = candidate.container
            try:
                pull_error = pull_errors.get(candidate.reference.familiar_tagged)
                if pull_error is not None:
                    raise pull_error

                logger.debug(f"Updating container {container.name} ({container.familiar_reference})")
                new_container, warnings = await self._update_container(candidate)
            except UpdateStepError as e:
                result.failed += 1
                logger.error(f"Failed to update container {container.name}: {e}")
                await self.notifications.container_error(container, e.context, e.cause)
                continue

            result.successful += 1
            result.updated.append(container.name)
            replaced.add(container.image)
            if warnings:
                logger.warning(f"Container {container.name} updated with warnings: {warnings}")
            logger.info(f"Updated container {container.name} ({container.short_id} -> {new_container.short_id})")
            await self.notifications.container_updated(container, new_container, warnings)

        logger.info(f"Container updates completed: {result.successful}/{result.candidates} successful")

        if self.updater.remove_images and len(replaced) > 0:
            logger.debug(f"Removing up to {len(replaced)} unused image(s)")
            result.images_removed = await self.cleanup.remove_unused_images(replaced)
            logger.info(f"Removed {result.images_removed} unused image(s)")

        return result

    async def _pull_images(self, candidates: List[UpdateCandidate]) -> Dict[str, Optional[UpdateStepError]]:
        """
        Pull every distinct repository of the batch once.

        Returns:
            familiar repo:tag -> UpdateStepError, or None when the image is ready
        """
        results: Dict[str, Optional[UpdateStepError]] = {}
        for candidate in candidates:
            key = candidate.reference.familiar_tagged
            if key in results:
                continue
            try:
                await self._pull_image(candidate)
                results[key] = None
            except UpdateStepError as e:
                logger.error(f"Failed to pull image {key}: {e}")
                await self.notifications.image_error(candidate.container.image, e.context, e.cause)
                results[key] = e
        return results

    async def _pull_image(self, candidate: UpdateCandidate) -> None:
        reference = candidate.reference

        # Several containers can share a repository, the image may already be present
        present = await _step(
            "Unable to check if image is latest",
            self.cache.is_latest_image_present(self.client, reference),
        )
        if present:
            logger.debug(f"Latest image for {reference.familiar_tagged} already present")
            return

        auth = get_registry_credentials(self.registries, reference.domain)
        logger.debug(f"Pulling image {reference.familiar_tagged}")
        await _step(
            "Unable to pull image",
            async_docker_call(self.client.images.pull, reference.repository, tag=reference.tag, auth_config=auth),
        )

        attrs = await _step(
            "Unable to inspect image",
            async_docker_call(self.client.api.inspect_image, str(reference)),
        )
        try:
            new_image = ImageRecord.from_inspect(attrs, reference)
        except (KeyError, ValueError) as e:
            raise UpdateStepError("Unable to initialize image", e) from e

        logger.info(f"Pulled image {reference.familiar_tagged} ({new_image.short_id})")
        await self.notifications.image_updated(candidate.container.image, new_image)

    def _creation_config(self, container: ContainerRecord, network_name: Optional[str]) -> Dict[str, Any]:
        """Original Config + HostConfig, attached to a single network."""
        config = dict(container.attrs.get("Config") or {})
        config["HostConfig"] = container.attrs.get("HostConfig") or {}
        if network_name:
            config["NetworkingConfig"] = networking_config(
                network_name, container.networks[network_name] or {}, container.id
            )
        return config

    async def _update_container(self, candidate: UpdateCandidate) -> Tuple[ContainerRecord, List[str]]:
        """
        Recreate a single container.

        Returns:
            (new ContainerRecord, warnings)

        Raises:
            UpdateStepError: A fatal step failed
        """
        container = candidate.container
        warnings: List[str] = []

        should_restart = container.is_running
        dependents = []
        if should_restart:
            dependents = await _step("Unable to fetch depending containers",
                                     self.resolver.get_dependents(container))
            warnings.extend(await self.resolver.stop_dependents(dependents))

            logger.debug(f"Stopping container {container.name} (timeout {container.stop_timeout}s)")
            await _step("Unable to stop container",
                        async_docker_call(self.client.api.stop, container.id, timeout=container.stop_timeout))

        networks = container.networks
        primary_network = select_primary_network(networks)

        logger.debug(f"Removing container {container.name}")
        await _step("Unable to remove container",
                    async_docker_call(self.client.api.remove_container, container.id,
                                      v=self.updater.remove_volumes, force=True))

        logger.debug(f"Creating container {container.name}")
        response = await _step("Unable to create container",
                               async_docker_call(self.client.api.create_container_from_config,
                                                 self._creation_config(container, primary_network),
                                                 container.name))
        new_id = response["Id"]
        if response.get("Warnings"):
            logger.warning(f"Received warnings while creating container {container.name}: {response['Warnings']}")
            warnings.extend(response["Warnings"])

        # Host networking cannot be combined with other networks
        if not container.is_host_network and len(networks) > 1:
            warnings.extend(await connect_remaining_networks(self.client, new_id, networks, primary_network, container.id))

        new_container = await _step("Unable to inspect container",
                                    inspect_container_record(self.client, new_id,
                                                             self.updater.stop_timeout, self.image_age))

        if should_restart:
            await _step("Unable to start container", self._start_with_retry(new_container))
            warnings.extend(await self.resolver.start_dependents(dependents, new_container))

        return new_container, warnings

    async def _start_with_retry(self, container: ContainerRecord) -> None:
        """Start a freshly created container, retrying a runtime race right after creation."""
        last_error = None
        for attempt in range(1, START_ATTEMPTS + 1):
            try:
                await async_docker_call(self.client.api.start, container.id)
                logger.debug(f"Started container {container.name}")
                return
            except Exception as e:
                last_error = e
                logger.debug(f"Start attempt {attempt}/{START_ATTEMPTS} of {container.name} failed: {e}")
                if attempt < START_ATTEMPTS:
                    await self.sleep(START_RETRY_DELAY)
        raise last_error
