from __future__ import annotations

import math
import threading
from collections.abc import Sequence
from typing import Final

from PIL import Image, ImageDraw

from .raster import Raster

Point = tuple[float, float]

_BACKGROUND: Final[tuple[int, int, int]] = (255, 255, 255)
_INK: Final[tuple[int, int, int]] = (0, 0, 0)


class InkSurface:
    """Drawing surface that accumulates pen strokes as black ink on white.

    Strokes are drawn with round caps and joints; points off the surface are
    clipped. Readers never see the live image: ``snapshot`` returns an
    immutable copy, so a stroke added (or a ``clear``) while a prediction is
    running cannot tear the captured pixels.
    """

    def __init__(self, width: int = 256, height: int = 256, stroke_width: int = 18) -> None:
        if width < 1 or height < 1:
            raise ValueError("surface dimensions must be >= 1")
        if stroke_width < 1:
            raise ValueError("stroke_width must be >= 1")
        self._width = width
        self._height = height
        self._stroke_width = stroke_width
        self._lock = threading.Lock()
        self._img = Image.new("RGB", (width, height), _BACKGROUND)
        self._draw = ImageDraw.Draw(self._img)
        self._pen: Point | None = None
        self._strokes = 0

    @property
    def size(self) -> tuple[int, int]:
        return (self._width, self._height)

    @property
    def stroke_width(self) -> int:
        return self._stroke_width

    @property
    def stroke_count(self) -> int:
        with self._lock:
            return self._strokes

    @property
    def drawing(self) -> bool:
        with self._lock:
            return self._pen is not None

    def begin_stroke(self, p: Point) -> None:
        pt = _checked(p)
        with self._lock:
            self._pen = pt
            self._strokes += 1

    def extend_stroke(self, p: Point) -> None:
        pt = _checked(p)
        with self._lock:
            if self._pen is None:
                # pointer moves without a pressed pen draw nothing
                return
            self._segment(self._pen, pt)
            self._pen = pt

    def end_stroke(self) -> None:
        with self._lock:
            self._pen = None

    def add_stroke(self, points: Sequence[Point]) -> None:
        """Draw a complete stroke; a single point leaves a round dot."""
        if not points:
            raise ValueError("stroke must contain at least one point")
        pts = [_checked(p) for p in points]
        with self._lock:
            self._strokes += 1
            if len(pts) == 1:
                self._dot(pts[0])
                return
            for a, b in zip(pts, pts[1:], strict=False):
                self._segment(a, b)

    def clear(self) -> None:
        with self._lock:
            self._draw.rectangle((0, 0, self._width, self._height), fill=_BACKGROUND)
            self._pen = None
            self._strokes = 0

    def snapshot(self) -> Raster:
        with self._lock:
            buf = self._img.tobytes()
        return Raster(self._width, self._height, "RGB", buf)

    def _segment(self, a: Point, b: Point) -> None:
        self._draw.line([a, b], fill=_INK, width=self._stroke_width)
        self._dot(a)
        self._dot(b)

    def _dot(self, p: Point) -> None:
        r = self._stroke_width / 2.0
        x, y = p
        self._draw.ellipse((x - r, y - r, x + r, y + r), fill=_INK)


def _checked(p: Point) -> Point:
    x, y = float(p[0]), float(p[1])
    if not (math.isfinite(x) and math.isfinite(y)):
        raise ValueError("stroke point coordinates must be finite")
    return (x, y)
