"""Result gallery, in-session history and upscaling with bounded retry."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

from backend import ImagePart

logger = logging.getLogger(__name__)

RESOLUTIONS = ("2K", "4K")
UPSCALE_ATTEMPTS = 3
UPSCALE_BACKOFF = 1.5


class UpscaleError(RuntimeError):
    pass


def _new_id() -> str:
    return uuid.uuid4().hex[:9]


@dataclass
class GeneratedImage:
    data: bytes
    prompt: str
    mime_type: str = "image/png"
    timestamp: datetime = field(default_factory=datetime.now)
    resolution: str | None = None
    id: str = field(default_factory=_new_id)

    @property
    def part(self) -> ImagePart:
        return ImagePart(self.data, self.mime_type)


@dataclass
class HistoryItem(GeneratedImage):
    category: str = "edit"


class HistoryStore:
    """In-memory history shared by every view of one running app.

    Items are only ever added or cleared in bulk; an upscale may swap an
    item's payload and resolution in place.
    """

    def __init__(self):
        self._items: list[HistoryItem] = []

    def __len__(self):
        return len(self._items)

    def add(self, image: GeneratedImage, category: str) -> HistoryItem:
        item = HistoryItem(
            data=image.data,
            prompt=image.prompt,
            mime_type=image.mime_type,
            timestamp=image.timestamp,
            resolution=image.resolution,
            category=category,
        )
        self._items.insert(0, item)
        return item

    def items(self) -> list[HistoryItem]:
        return list(self._items)

    def by_category(self, category: str) -> list[HistoryItem]:
        if category == "ALL":
            return self.items()
        return [item for item in self._items if item.category == category]

    def get(self, item_id: str) -> HistoryItem | None:
        return next((item for item in self._items if item.id == item_id), None)

    def categories(self) -> list[str]:
        return sorted({item.category for item in self._items})

    def replace_image(self, old_data: bytes, new_data: bytes, resolution: str, mime_type: str | None = None) -> int:
        count = 0
        for item in self._items:
            if item.data == old_data:
                item.data = new_data
                item.resolution = resolution
                if mime_type:
                    item.mime_type = mime_type
                count += 1
        return count

    def clear(self):
        self._items = []


class Gallery:
    """Latest results and earlier results of one editor view."""

    def __init__(self):
        self.latest: list[GeneratedImage] = []
        self.history: list[GeneratedImage] = []

    def begin(self):
        """Move the latest results to the front of history before a new run."""
        if self.latest:
            self.history = self.latest + self.history
            self.latest = []

    def add_latest(self, images: list[GeneratedImage]):
        self.latest.extend(images)

    def all(self) -> list[GeneratedImage]:
        return self.latest + self.history

    def find(self, image_id: str) -> GeneratedImage | None:
        return next((img for img in self.all() if img.id == image_id), None)

    def replace(self, image_id: str, data: bytes, resolution: str) -> GeneratedImage | None:
        img = self.find(image_id)
        if img is not None:
            img.data = data
            img.resolution = resolution
        return img

    def reset(self):
        self.latest = []
        self.history = []


async def upscale_with_retry(
    part: ImagePart,
    target: str,
    upscale: Callable[[ImagePart, str], Awaitable[bytes]],
    on_retry: Callable[[int], None] | None = None,
    attempts: int = UPSCALE_ATTEMPTS,
    backoff: float = UPSCALE_BACKOFF,
    sleep=asyncio.sleep,
) -> bytes:
    """Call upscale up to `attempts` times, waiting `backoff` seconds between tries.

    on_retry receives the number of the attempt that just failed, and is
    not called after the final one.
    """
    for attempt in range(1, attempts + 1):
        try:
            data = await upscale(part, target)
            if not data:
                raise UpscaleError("upscale returned no image")
            return data
        except Exception as e:
            if attempt == attempts:
                logger.error("Upscaling failed after %d attempts: %s", attempts, e)
                raise UpscaleError(f"upscale to {target} failed") from e
            logger.warning("Upscaling attempt %d failed (%s). Retrying...", attempt, e)
            if on_retry:
                on_retry(attempt)
            await sleep(backoff)
