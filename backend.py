"""Client side of the remote image worker deployed with modal_app.py."""

import io
import logging
import os
from dataclasses import dataclass

import modal
from PIL import Image

logger = logging.getLogger(__name__)

APP_NAME = os.environ.get("MODAL_APP_NAME", "region-editor")
WORKER_CLASS = "ImageWorker"

ASPECT_RATIOS = {
    "1:1": 1.0,
    "4:3": 4 / 3,
    "3:4": 3 / 4,
    "16:9": 16 / 9,
    "9:16": 9 / 16,
}


@dataclass(frozen=True)
class ImagePart:
    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_image(cls, image: Image.Image, fmt: str = "PNG") -> "ImagePart":
        buf = io.BytesIO()
        if fmt == "JPEG":
            image = image.convert("RGB")
        image.save(buf, format=fmt)
        return cls(buf.getvalue(), f"image/{fmt.lower()}")

    def to_wire(self) -> tuple[bytes, str]:
        return self.data, self.mime_type


def open_image(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def sniff_mime(data: bytes) -> str:
    try:
        fmt = Image.open(io.BytesIO(data)).format
    except (OSError, ValueError):
        return "image/png"
    return Image.MIME.get(fmt, "image/png")


def closest_aspect_ratio(width: int, height: int) -> str:
    ratio = width / height
    return min(ASPECT_RATIOS, key=lambda k: abs(ASPECT_RATIOS[k] - ratio))


class ModalBackend:
    """Generation and upscale capabilities backed by the deployed Modal worker."""

    def __init__(self, app_name: str = APP_NAME):
        self.app_name = app_name
        self._worker = None

    def _get_worker(self):
        if self._worker is None:
            logger.info("Looking up Modal app: %s", self.app_name)
            cls = modal.Cls.from_name(self.app_name, WORKER_CLASS)
            self._worker = cls()
        return self._worker

    async def generate(self, parts: list[ImagePart], prompt: str) -> bytes:
        worker = self._get_worker()
        images = [p.to_wire() for p in parts]
        logger.debug("generate: %d image(s), prompt %d chars", len(images), len(prompt))
        return await worker.generate.remote.aio(images, prompt)

    async def upscale(self, part: ImagePart, target: str) -> bytes:
        worker = self._get_worker()
        img = open_image(part.data)
        ratio = closest_aspect_ratio(*img.size)
        logger.debug("upscale: %dx%d to %s (aspect %s)", img.width, img.height, target, ratio)
        return await worker.upscale.remote.aio(part.to_wire(), target.lower(), ratio)
