"""Editor session: owns one view's source image, selection, gallery and status."""

import logging
import os
import time

from PIL import Image

from backend import ImagePart, open_image, sniff_mime
from editing import EditRequest, GenerationError, InputError, outpaint_instruction, run_edit
from gallery import (RESOLUTIONS, UPSCALE_ATTEMPTS, UPSCALE_BACKOFF, Gallery, GeneratedImage, HistoryStore,
                     UpscaleError, upscale_with_retry)
from mask import composite_preserved, mask_coverage, mask_png, outpaint_canvas, rasterize_mask
from selection import SelectionCanvas

logger = logging.getLogger(__name__)

COMPOSITE_PRESERVED = os.environ.get("COMPOSITE_PRESERVED", "0") == "1"

IDLE = "idle"
GENERATING = "generating"
SUCCESS = "success"
ERROR = "error"


class EditorSession:
    def __init__(self, backend, history: HistoryStore | None = None,
                 category: str = "edit", composite: bool = COMPOSITE_PRESERVED):
        self.backend = backend
        self.history = history
        self.category = category
        self.composite = composite

        self.canvas = SelectionCanvas()
        self.gallery = Gallery()
        self.source: ImagePart | None = None
        self.reference: ImagePart | None = None

        self.status = IDLE
        self.error: str | None = None
        self.generation_time = 0.0
        self.upscaling: dict[str, str] = {}
        self.upscale_backoff = UPSCALE_BACKOFF
        self._epoch = 0

    @property
    def image(self) -> Image.Image | None:
        return self.canvas.image

    def load_source(self, data: bytes):
        img = open_image(data)
        self._epoch += 1
        self.source = ImagePart(data, sniff_mime(data))
        self.canvas.load_image(img)
        self.status = IDLE
        self.error = None
        logger.info("Source image loaded: %dx%d (epoch %d)", img.width, img.height, self._epoch)

    def clear_source(self):
        self._epoch += 1
        self.source = None
        self.canvas.unload()
        self.gallery.reset()
        self.upscaling = {}
        self.status = IDLE
        self.error = None

    def load_reference(self, data: bytes | None):
        if data:
            open_image(data)
            self.reference = ImagePart(data, sniff_mime(data))
        else:
            self.reference = None

    def _fail(self, message: str):
        self.status = ERROR
        self.error = message

    def current_mask(self) -> Image.Image | None:
        if self.image is None:
            return None
        return rasterize_mask(self.canvas.paths, self.image.size)

    async def generate(self, instruction: str, count: int = 1) -> list[GeneratedImage]:
        """Run a masked edit of the current source with the current selection."""
        if self.source is None:
            self._fail("Please upload a source image.")
            return []
        if not instruction or not instruction.strip():
            self._fail("Please enter a prompt.")
            return []

        mask = self.current_mask()
        if mask is not None:
            logger.info("Mask %dx%d, %.2f%% editable", mask.width, mask.height, mask_coverage(mask) * 100)
        request = EditRequest(
            source=self.source,
            instruction=instruction,
            mask=ImagePart(mask_png(mask)) if mask is not None else None,
            reference=self.reference,
            count=count,
        )
        return await self._run(request, instruction, self.image, mask, self.category)

    async def expand(self, ratio: str, prompt: str = "", count: int = 1) -> list[GeneratedImage]:
        """Outpaint the source image to a new aspect ratio."""
        if self.source is None:
            self._fail("Please upload the image to expand.")
            return []
        try:
            canvas, mask = outpaint_canvas(self.image, ratio)
        except ValueError as e:
            self._fail(str(e))
            return []
        request = EditRequest(
            source=ImagePart.from_image(canvas, "JPEG"),
            instruction=outpaint_instruction(prompt),
            mask=ImagePart(mask_png(mask)),
            count=count,
        )
        label = f"Outpaint to {ratio}: {prompt}".rstrip(": ")
        return await self._run(request, label, canvas, mask, "expand")

    async def _run(self, request: EditRequest, label: str, source_img, mask, category: str) -> list[GeneratedImage]:
        epoch = self._epoch
        self.gallery.begin()
        self.status = GENERATING
        self.error = None
        started = time.monotonic()
        try:
            results = await run_edit(request, self.backend.generate)
        except InputError as e:
            if epoch == self._epoch:
                self._fail(str(e))
            return []
        except GenerationError as e:
            if epoch == self._epoch:
                logger.error("Image editing failed: %s", e)
                self._fail("Something went wrong while generating the image.")
            return []
        finally:
            if epoch == self._epoch:
                self.generation_time = time.monotonic() - started

        if epoch != self._epoch:
            logger.info("Dropping %d stale result(s) for a replaced source image", len(results))
            return []

        if self.composite and mask is not None:
            results = _composite_all(source_img, results, mask)
            if not results:
                self._fail("Something went wrong while generating the image.")
                return []

        images = [GeneratedImage(data=data, prompt=label, mime_type=sniff_mime(data)) for data in results]
        self.gallery.add_latest(images)
        if self.history is not None:
            for img in images:
                self.history.add(img, category)
        self.status = SUCCESS
        return images

    async def upscale(self, image_id: str, resolution: str) -> GeneratedImage | None:
        img = self.gallery.find(image_id)
        if img is None:
            raise KeyError(image_id)
        if resolution not in RESOLUTIONS:
            raise InputError(f"unsupported resolution: {resolution}")
        if img.resolution == resolution:
            raise InputError(f"image is already {resolution}")

        old_data = img.data
        self.upscaling[image_id] = "Upscaling..."

        def on_retry(attempt: int):
            self.upscaling[image_id] = f"Retrying ({attempt}/{UPSCALE_ATTEMPTS})..."

        try:
            new_data = await upscale_with_retry(img.part, resolution, self.backend.upscale,
                                                on_retry=on_retry, backoff=self.upscale_backoff)
        except UpscaleError:
            return None
        finally:
            self.upscaling.pop(image_id, None)

        mime_type = sniff_mime(new_data)
        if self.history is not None:
            self.history.replace_image(old_data, new_data, resolution, mime_type)
        # The gallery may have been reset while the upscale was in flight
        if self.gallery.replace(image_id, new_data, resolution) is None:
            logger.info("Upscaled image %s is no longer in the gallery", image_id)
            return None
        img.mime_type = mime_type
        return img


def _composite(source_img: Image.Image, data: bytes, mask: Image.Image) -> bytes:
    merged = composite_preserved(source_img, open_image(data), mask)
    return ImagePart.from_image(merged).data


def _composite_all(source_img: Image.Image, results: list[bytes], mask: Image.Image) -> list[bytes]:
    merged = []
    for i, data in enumerate(results):
        try:
            merged.append(_composite(source_img, data, mask))
        except (OSError, ValueError) as e:
            logger.warning("Variant %d/%d is not a readable image: %s", i + 1, len(results), e)
    return merged
