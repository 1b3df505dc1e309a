"""
Image cleanup after an update batch

Removes images replaced during the batch once no container references them.
"""

import logging
from typing import Any

from notifications import Notifications
from updates.types import ImageSet
from utils.async_docker import async_docker_call
from utils.image_id import id_encoded

logger = logging.getLogger(__name__)


class ImageCleanup:
    """Removes replaced images left unreferenced by any container"""

    def __init__(self, client: Any, notifications: Notifications):
        self.client = client
        self.notifications = notifications

    async def remove_unused_images(self, images: ImageSet) -> int:
        """
        Remove every image of the set no container uses anymore.

        Returns:
            Number of images actually removed
        """
        try:
            containers = await async_docker_call(self.client.api.containers, all=True)
        except Exception as e:
            logger.error(f"Listing containers for image cleanup failed: {e}", exc_info=True)
            await self.notifications.error("Unable to list containers for image cleanup", e)
            return 0

        in_use = {id_encoded(c.get("ImageID", "")) for c in containers}

        count = 0
        for image in images:
            if image.encoded_id in in_use:
                logger.debug(f"Image {image.short_id} still in use, keeping it")
                continue

            logger.debug(f"Removing unused image {image.short_id} ({image.reference.familiar_tagged})")
            try:
                await async_docker_call(self.client.api.remove_image, image.id, force=True)
                count += 1
            except Exception as e:
                logger.error(f"Removing image {image.short_id} failed: {e}")
                await self.notifications.image_removal_failed(image, e)

        return count
