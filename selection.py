"""Selection canvas: freehand, polygon and rectangle paths over a source image."""

import logging
from dataclasses import dataclass, field

from PIL import Image, ImageDraw

logger = logging.getLogger(__name__)

FREEHAND = "freehand"
POLYGON = "polygon"
RECTANGLE = "rectangle"
TOOLS = (FREEHAND, POLYGON, RECTANGLE)

MIN_THICKNESS = 5
MAX_THICKNESS = 200
DEFAULT_THICKNESS = 20

# Overlay colours (brand #C15F3C); visual only
STROKE_COLOR = (193, 95, 60, 178)
FILL_COLOR = (193, 95, 60, 77)
OUTLINE_COLOR = (193, 95, 60, 230)
OUTLINE_CSS_PX = 2


@dataclass(frozen=True)
class Box:
    """On-screen bounding box of the canvas element, in CSS pixels."""
    left: float
    top: float
    width: float
    height: float

    @classmethod
    def from_json(cls, data) -> "Box":
        if isinstance(data, dict):
            return cls(data["left"], data["top"], data["width"], data["height"])
        left, top, width, height = data
        return cls(left, top, width, height)


@dataclass(frozen=True)
class Path:
    kind: str
    points: tuple
    thickness: float = DEFAULT_THICKNESS


def to_native(client_x: float, client_y: float, box: Box, backing: tuple[int, int]) -> tuple[float, float]:
    """Map a pointer position to native image pixels.

    The scale is taken from the box passed in with every event, since the
    displayed size can change between two events.
    """
    if box.width <= 0 or box.height <= 0:
        raise ValueError(f"canvas has no displayed size: {box}")
    scale_x = backing[0] / box.width
    scale_y = backing[1] / box.height
    return ((client_x - box.left) * scale_x, (client_y - box.top) * scale_y)


def rect_bounds(points) -> tuple[float, float, float, float]:
    """Normalized (x0, y0, x1, y1) from a rectangle path's first and last point."""
    (ax, ay), (bx, by) = points[0], points[-1]
    return min(ax, bx), min(ay, by), max(ax, bx), max(ay, by)


@dataclass
class SelectionCanvas:
    image: Image.Image | None = None
    tool: str = FREEHAND
    thickness: float = DEFAULT_THICKNESS
    paths: list = field(default_factory=list)
    current: list | None = None
    display_size: tuple[float, float] | None = None

    @property
    def backing_size(self) -> tuple[int, int] | None:
        return self.image.size if self.image is not None else None

    def load_image(self, image: Image.Image):
        self.image = image
        self.clear()
        self.display_size = None
        logger.info("Selection canvas loaded %dx%d image", *image.size)

    def unload(self):
        self.image = None
        self.clear()

    def clear(self):
        self.paths = []
        self.current = None

    def set_tool(self, kind: str, thickness: float | None = None):
        if kind not in TOOLS:
            raise ValueError(f"unknown tool: {kind}")
        self.tool = kind
        if thickness is not None:
            self.thickness = max(MIN_THICKNESS, min(MAX_THICKNESS, float(thickness)))

    def pointer_down(self, x: float, y: float, box: Box) -> bool:
        if self.image is None:
            return False
        self.current = [to_native(x, y, box, self.backing_size)]
        return True

    def pointer_move(self, x: float, y: float, box: Box) -> bool:
        if self.image is None or self.current is None:
            return False
        self.current.append(to_native(x, y, box, self.backing_size))
        return True

    def pointer_up(self) -> Path | None:
        """Commit the in-progress path if it has at least two points."""
        if self.image is None or self.current is None:
            return None
        points, self.current = self.current, None
        if len(points) < 2:
            return None
        path = Path(self.tool, tuple(points), self.thickness)
        self.paths.append(path)
        logger.debug("Committed %s path with %d points", path.kind, len(points))
        return path

    def replay(self, events: list[dict]) -> int:
        """Feed browser pointer events through the handlers; returns paths committed."""
        committed = 0
        try:
            for ev in events:
                kind = ev.get("type")
                if kind == "down":
                    self.pointer_down(ev["x"], ev["y"], Box.from_json(ev["box"]))
                elif kind == "move":
                    self.pointer_move(ev["x"], ev["y"], Box.from_json(ev["box"]))
                elif kind in ("up", "leave"):
                    if self.pointer_up() is not None:
                        committed += 1
        except (KeyError, TypeError, ValueError):
            # Drop the half-built path; committed paths stay
            self.current = None
            raise
        return committed

    def resize(self, width: float, height: float) -> Image.Image | None:
        self.display_size = (width, height)
        return self.render()

    def _outline_width(self) -> int:
        if not self.display_size or not self.display_size[0]:
            return OUTLINE_CSS_PX * 2
        scale = self.backing_size[0] / self.display_size[0]
        return max(1, round(OUTLINE_CSS_PX * scale))

    def render(self) -> Image.Image | None:
        """Redraw the whole overlay from the current selection state."""
        if self.image is None:
            return None
        overlay = Image.new("RGBA", self.backing_size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay, "RGBA")
        outline = self._outline_width()
        for path in self.paths:
            _draw_path(draw, path, outline, closed=True)
        if self.current:
            _draw_path(draw, Path(self.tool, tuple(self.current), self.thickness), outline, closed=False)
        return overlay


def _draw_path(draw: ImageDraw.ImageDraw, path: Path, outline: int, closed: bool):
    points = list(path.points)
    if path.kind == FREEHAND:
        draw_stroke(draw, points, path.thickness, STROKE_COLOR)
    elif path.kind == POLYGON:
        if closed and len(points) >= 3:
            draw.polygon(points, fill=FILL_COLOR)
            draw.line(points + points[:1], fill=OUTLINE_COLOR, width=outline, joint="curve")
        elif len(points) >= 2:
            draw.line(points, fill=OUTLINE_COLOR, width=outline, joint="curve")
    elif path.kind == RECTANGLE and len(points) >= 2:
        draw.rectangle(rect_bounds(points), fill=FILL_COLOR, outline=OUTLINE_COLOR, width=outline)


def draw_stroke(draw: ImageDraw.ImageDraw, points, thickness: float, fill):
    """Polyline with round caps and joins."""
    width = max(1, round(thickness))
    radius = thickness / 2
    if len(points) > 1:
        draw.line(points, fill=fill, width=width, joint="curve")
    for x, y in points:
        draw.ellipse([x - radius, y - radius, x + radius, y + radius], fill=fill)
