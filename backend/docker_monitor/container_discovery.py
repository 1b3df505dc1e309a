"""
Container Discovery Module for YACU
Builds ContainerRecords from runtime inspect calls
"""

import logging
from typing import Any, Dict, List

from updates.types import ContainerRecord, ImageRecord
from utils.async_docker import async_docker_call
from utils.image_reference import parse_tagged_reference

logger = logging.getLogger(__name__)


async def list_container_ids(client: Any) -> List[str]:
    """IDs of all containers known to the runtime, stopped ones included."""
    summaries = await async_docker_call(client.api.containers, all=True)
    return [summary["Id"] for summary in summaries]


async def build_container_record(
    client: Any,
    attrs: Dict[str, Any],
    stop_timeout: int,
    min_image_age: int,
) -> ContainerRecord:
    """
    Build a ContainerRecord from container inspect data.

    The tagged reference is resolved before the image is inspected, so a
    digest-pinned container costs no further runtime calls.

    Raises:
        RepositoryNotTaggedError: Image reference is pinned to a digest
        InvalidReferenceError: Image reference cannot be parsed
        docker.errors.DockerException: Image inspect failed
    """
    reference = parse_tagged_reference((attrs.get("Config") or {}).get("Image") or "")
    image_attrs = await async_docker_call(client.api.inspect_image, attrs["Image"])
    image = ImageRecord.from_inspect(image_attrs, reference)
    return ContainerRecord.from_inspect(attrs, image, reference, stop_timeout, min_image_age)


async def inspect_container_record(
    client: Any,
    container_id: str,
    stop_timeout: int,
    min_image_age: int,
) -> ContainerRecord:
    """Inspect a container by ID and build its ContainerRecord."""
    attrs = await async_docker_call(client.api.inspect_container, container_id)
    return await build_container_record(client, attrs, stop_timeout, min_image_age)
