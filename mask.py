"""Mask rasterization: selection paths to a full-resolution black/white bitmap."""

import io
import logging

import numpy as np
from PIL import Image, ImageDraw

from selection import FREEHAND, POLYGON, RECTANGLE, Path, draw_stroke, rect_bounds

logger = logging.getLogger(__name__)

PRESERVE = 0
EDITABLE = 255


def rasterize_mask(paths: list[Path], size: tuple[int, int]) -> Image.Image | None:
    """Render committed paths into an L-mode mask at the source's native size.

    Black (0) pixels must be preserved, white (255) pixels may be edited.
    Returns None when there is nothing selected.
    """
    if not paths:
        return None

    mask = Image.new("L", size, PRESERVE)
    draw = ImageDraw.Draw(mask)
    for path in paths:
        points = [tuple(p) for p in path.points]
        if path.kind == FREEHAND:
            draw_stroke(draw, points, path.thickness, EDITABLE)
        elif path.kind == POLYGON:
            # Fewer than three points encloses no area
            if len(points) >= 3:
                draw.polygon(points, fill=EDITABLE)
        elif path.kind == RECTANGLE:
            x0, y0, x1, y1 = (round(v) for v in rect_bounds(points))
            if x1 > x0 and y1 > y0:
                # PIL boxes are inclusive; masks cover [x0, x1) x [y0, y1)
                draw.rectangle([x0, y0, x1 - 1, y1 - 1], fill=EDITABLE)
        else:
            raise ValueError(f"unknown path kind: {path.kind}")
    return mask


def mask_png(mask: Image.Image) -> bytes:
    buf = io.BytesIO()
    mask.save(buf, format="PNG", optimize=False)
    return buf.getvalue()


def mask_coverage(mask: Image.Image) -> float:
    """Fraction of pixels marked editable."""
    arr = np.asarray(mask.convert("L"))
    if arr.size == 0:
        return 0.0
    return float((arr > 127).mean())


def parse_ratio(ratio: str) -> float:
    try:
        w, h = (float(v) for v in ratio.split(":"))
        value = w / h
    except (ValueError, ZeroDivisionError):
        raise ValueError(f"invalid aspect ratio: {ratio}") from None
    if value <= 0:
        raise ValueError(f"invalid aspect ratio: {ratio}")
    return value


def outpaint_canvas(image: Image.Image, ratio: str) -> tuple[Image.Image, Image.Image]:
    """Centre image on a larger black canvas of the given aspect ratio.

    Returns the canvas and a mask that is white over the new area and black
    over the original pixels.
    """
    target = parse_ratio(ratio)
    width, height = image.size
    if target > width / height:
        new_w, new_h = round(height * target), height
    else:
        new_w, new_h = width, round(width / target)

    x = (new_w - width) // 2
    y = (new_h - height) // 2

    canvas = Image.new("RGB", (new_w, new_h), (0, 0, 0))
    canvas.paste(image.convert("RGB"), (x, y))

    mask = Image.new("L", (new_w, new_h), EDITABLE)
    mask.paste(PRESERVE, (x, y, x + width, y + height))
    logger.info("Outpaint %dx%d -> %dx%d (%s)", width, height, new_w, new_h, ratio)
    return canvas, mask


def composite_preserved(source: Image.Image, generated: Image.Image, mask: Image.Image) -> Image.Image:
    """Copy source pixels back over the generated image wherever the mask is black."""
    src = source.convert("RGB")
    gen = generated.convert("RGB")
    if gen.size != src.size:
        gen = gen.resize(src.size, Image.LANCZOS)

    keep = np.asarray(mask.convert("L")) <= 127
    out = np.asarray(gen).copy()
    out[keep] = np.asarray(src)[keep]
    return Image.fromarray(out)
