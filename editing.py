"""Masked edit requests: instruction templates and N-way fan-out to the generator."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from backend import ImagePart

logger = logging.getLogger(__name__)

MAX_COUNT = 4

Generate = Callable[[list[ImagePart], str], Awaitable[bytes]]


class InputError(ValueError):
    """Missing or invalid user input; no generation is attempted."""


class GenerationError(RuntimeError):
    """Every requested variant failed."""


MASK_AND_REFERENCE_TEMPLATE = """You receive THREE images in this order:
1. Original image.
2. Mask image (white = editable, black = no-change).
3. Style reference image.

RULES
1. The BLACK area of the mask is a strict no-change zone. Every pixel there must be returned identical to the original image.
2. Only modify pixels inside the WHITE area of the mask.
3. Apply this request inside the white area: "{instruction}".
4. Inside the white area, match the style reference's materials, lighting, texture and colour palette. Do not copy its objects or geometry, and do not adopt its pixel dimensions or aspect ratio.
5. Return one image with the same size as the original: white area edited as requested, black area an untouched copy of the original, seamless transitions between them."""

MASK_TEMPLATE = """You receive TWO images in this order:
1. Original image.
2. Mask image (white = editable, black = no-change).

RULES
1. Only modify pixels inside the WHITE area of the mask.
2. The BLACK area of the mask is a strict no-change zone. Every pixel there must be returned identical to the original image.
3. Apply this request inside the white area: "{instruction}".
4. Do not change the size of the original image.
5. Return one image: white area edited as requested, black area fully preserved, with a smooth natural boundary between them."""

REFERENCE_TEMPLATE = """You receive TWO images in this order:
1. Original image.
2. Style reference image.

RULES
1. Apply this request to the original image: "{instruction}".
2. Adopt only the style of the reference (materials, lighting, texture, colour palette). Do not copy its objects or geometry.
3. Do not adopt the reference's pixel dimensions or aspect ratio. The output must keep the original image's size."""

PLAIN_TEMPLATE = """{instruction}

Do not change the size of the original image."""


def build_instruction(instruction: str, has_mask: bool, has_reference: bool) -> str:
    if has_mask and has_reference:
        template = MASK_AND_REFERENCE_TEMPLATE
    elif has_mask:
        template = MASK_TEMPLATE
    elif has_reference:
        template = REFERENCE_TEMPLATE
    else:
        template = PLAIN_TEMPLATE
    return template.format(instruction=instruction.strip())


def outpaint_instruction(prompt: str) -> str:
    if prompt and prompt.strip():
        return f"Outpaint: {prompt.strip()}. Seamlessly extend the image into the masked area."
    return "Outpaint: seamlessly extend the scene, matching the lighting, style and perspective of the original image."


@dataclass
class EditRequest:
    source: ImagePart
    instruction: str
    mask: ImagePart | None = None
    reference: ImagePart | None = None
    count: int = 1

    def validate(self):
        if not self.instruction or not self.instruction.strip():
            raise InputError("Please enter a prompt.")
        if self.count < 1:
            raise InputError("Ask for at least one image.")

    def parts(self) -> list[ImagePart]:
        """Images in the order the instruction describes them."""
        parts = [self.source]
        if self.mask is not None:
            parts.append(self.mask)
        if self.reference is not None:
            parts.append(self.reference)
        return parts

    def prompt(self) -> str:
        return build_instruction(self.instruction, self.mask is not None, self.reference is not None)


async def run_edit(request: EditRequest, generate: Generate) -> list[bytes]:
    """Issue request.count concurrent generations and keep every success.

    A failed variant is logged and dropped; GenerationError is raised only
    when none succeed.
    """
    request.validate()
    parts = request.parts()
    prompt = request.prompt()
    logger.info("Edit request: %d variant(s), mask=%s, reference=%s",
                request.count, request.mask is not None, request.reference is not None)

    outcomes = await asyncio.gather(
        *(generate(parts, prompt) for _ in range(request.count)),
        return_exceptions=True,
    )

    results = []
    for i, outcome in enumerate(outcomes):
        if isinstance(outcome, BaseException):
            logger.warning("Variant %d/%d failed: %s", i + 1, request.count, outcome)
        elif outcome:
            results.append(outcome)
        else:
            logger.warning("Variant %d/%d returned no image", i + 1, request.count)

    if not results:
        raise GenerationError("No edited image returned")
    logger.info("Edit request: %d/%d variant(s) succeeded", len(results), request.count)
    return results
