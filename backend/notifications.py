"""
Notification service for YACU
Routes update lifecycle events to the configured sinks (Discord webhooks)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from updates.types import ContainerRecord, ImageRecord
from utils.image_id import id_encoded
from utils.labels import LABEL_UNRAID_WEBUI

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Receiver of update lifecycle events. Implementations log and swallow delivery failures."""

    @abstractmethod
    async def error(self, context: str, error: BaseException) -> None:
        """Batch-level failure"""

    @abstractmethod
    async def image_updated(self, prev_image: ImageRecord, new_image: ImageRecord) -> None:
        """A newer image was pulled"""

    @abstractmethod
    async def image_error(self, image: ImageRecord, context: str, error: BaseException) -> None:
        """Registry check or pull of an image failed"""

    @abstractmethod
    async def image_removal_failed(self, image: ImageRecord, error: BaseException) -> None:
        """An unused image could not be removed"""

    @abstractmethod
    async def container_updated(self, prev_container: ContainerRecord, new_container: ContainerRecord,
                                warnings: List[str]) -> None:
        """A container was recreated with the new image"""

    @abstractmethod
    async def container_error(self, container: ContainerRecord, context: str, error: BaseException) -> None:
        """Recreating a container failed"""

    async def close(self) -> None:
        """Release resources held by the sink"""


@dataclass(frozen=True)
class SinkGates:
    """Per-sink event kind switches"""
    errors: bool = True
    image_success: bool = True
    container_success: bool = True


class Notifications:
    """Fans events out to every sink whose gate for the event kind is enabled"""

    def __init__(self):
        self._sinks: List[Tuple[NotificationSink, SinkGates]] = []

    def add(self, sink: NotificationSink, gates: Optional[SinkGates] = None) -> None:
        self._sinks.append((sink, gates or SinkGates()))

    def __len__(self) -> int:
        return len(self._sinks)

    async def _dispatch(self, gate: str, method: str, *args) -> None:
        for sink, gates in self._sinks:
            if not getattr(gates, gate):
                continue
            try:
                await getattr(sink, method)(*args)
            except Exception as e:
                logger.error(f"Notification sink {type(sink).__name__} failed on {method}: {e}", exc_info=True)

    async def error(self, context: str, error: BaseException) -> None:
        await self._dispatch("errors", "error", context, error)

    async def image_updated(self, prev_image: ImageRecord, new_image: ImageRecord) -> None:
        await self._dispatch("image_success", "image_updated", prev_image, new_image)

    async def image_error(self, image: ImageRecord, context: str, error: BaseException) -> None:
        await self._dispatch("errors", "image_error", image, context, error)

    async def image_removal_failed(self, image: ImageRecord, error: BaseException) -> None:
        await self._dispatch("errors", "image_removal_failed", image, error)

    async def container_updated(self, prev_container: ContainerRecord, new_container: ContainerRecord,
                                warnings: List[str]) -> None:
        await self._dispatch("container_success", "container_updated", prev_container, new_container, warnings)

    async def container_error(self, container: ContainerRecord, context: str, error: BaseException) -> None:
        await self._dispatch("errors", "container_error", container, context, error)

    async def close(self) -> None:
        for sink, _ in self._sinks:
            await sink.close()


# Discord embed colors
COLOR_ERROR = 12723739
COLOR_IMAGE_UPDATED = 881812
COLOR_CONTAINER_UPDATED = 2597142


class DiscordWebhookNotifier(NotificationSink):
    """Posts one Discord embed per event to a webhook URL"""

    def __init__(self, url: str, author_name: str = "", author_url: str = "", author_icon_url: str = "",
                 http_client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.author_name = author_name
        self.author_url = author_url
        self.author_icon_url = author_icon_url
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)

    def _embed(self, title: str, color: int, description: Optional[str] = None,
               fields: Optional[List[Dict[str, Any]]] = None, url: Optional[str] = None) -> Dict[str, Any]:
        embed = {
            "title": title,
            "color": color,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "footer": {"text": "YACU"},
        }
        if description:
            embed["description"] = description
        if fields:
            embed["fields"] = fields
        if url:
            embed["url"] = url

        author = {}
        if self.author_name:
            author["name"] = self.author_name
        if self.author_url:
            author["url"] = self.author_url
        if self.author_icon_url:
            author["icon_url"] = self.author_icon_url
        if author:
            embed["author"] = author
        return embed

    @staticmethod
    def _field(name: str, value: str, inline: bool = False) -> Dict[str, Any]:
        return {"name": name, "value": value or "-", "inline": inline}

    @staticmethod
    def _error_description(context: str, error: BaseException) -> str:
        return f"**{context}**\n```{error}```"

    async def _send(self, embed: Dict[str, Any]) -> bool:
        """Send an embed via Discord webhook"""
        try:
            response = await self.http_client.post(self.url, json={"embeds": [embed]})
            response.raise_for_status()
            logger.debug("Discord notification sent successfully")
            return True
        except httpx.HTTPStatusError as e:
            logger.error(f"Discord HTTP error {e.response.status_code}: {e}")
        except httpx.RequestError as e:
            logger.error(f"Discord connection error: {e}")
        except Exception as e:
            logger.error(f"Failed to send Discord notification: {e}")
        return False

    async def error(self, context: str, error: BaseException) -> None:
        await self._send(self._embed(
            "An error occurred during update",
            COLOR_ERROR,
            description=self._error_description(context, error),
        ))

    async def image_updated(self, prev_image: ImageRecord, new_image: ImageRecord) -> None:
        await self._send(self._embed(
            f"{new_image.reference.familiar_tagged} ({new_image.short_id}) has been updated",
            COLOR_IMAGE_UPDATED,
            fields=[
                self._field("Previous Digest", id_encoded(prev_image.repo_digest or "")),
                self._field("New Digest", id_encoded(new_image.repo_digest or "")),
            ],
        ))

    async def image_error(self, image: ImageRecord, context: str, error: BaseException) -> None:
        await self._send(self._embed(
            f"{image.reference.familiar_tagged} ({image.short_id}) threw an error during update",
            COLOR_ERROR,
            description=self._error_description(context, error),
        ))

    async def image_removal_failed(self, image: ImageRecord, error: BaseException) -> None:
        await self._send(self._embed(
            f"{image.short_id} threw an error during removal",
            COLOR_ERROR,
            description=f"```{error}```",
            fields=[
                self._field("Long ID", image.id),
                self._field("Last Tag", image.reference.familiar_tagged),
            ],
        ))

    async def container_updated(self, prev_container: ContainerRecord, new_container: ContainerRecord,
                                warnings: List[str]) -> None:
        description = None
        if warnings:
            description = "__Following errors occurred during update:__\n"
            description += "".join(f"* {warning}\n" for warning in warnings)

        await self._send(self._embed(
            f"{new_container.name} ({new_container.familiar_reference}) has been updated",
            COLOR_CONTAINER_UPDATED,
            description=description,
            fields=[
                self._field("Container Id", new_container.short_id, inline=True),
                self._field("Image Id", new_container.image.short_id, inline=True),
            ],
            url=new_container.labels.get(LABEL_UNRAID_WEBUI) or None,
        ))

    async def container_error(self, container: ContainerRecord, context: str, error: BaseException) -> None:
        await self._send(self._embed(
            f"{container.name} ({container.familiar_reference}) threw an error during update",
            COLOR_ERROR,
            description=self._error_description(context, error),
            fields=[
                self._field("Container Id", container.short_id, inline=True),
                self._field("Image Id", container.image.short_id, inline=True),
            ],
        ))

    async def close(self):
        """Clean up resources"""
        await self.http_client.aclose()
