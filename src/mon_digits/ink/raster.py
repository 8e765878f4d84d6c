from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Literal

from PIL import Image

RasterMode = Literal["RGB", "L"]

_CHANNELS: Final[dict[str, int]] = {"RGB": 3, "L": 1}


@dataclass(frozen=True)
class Raster:
    """Immutable pixel grid.

    ``data`` holds row-major bytes, three per cell for ``"RGB"`` and one per
    cell for ``"L"``. Stages never edit a raster in place; they build a new
    byte buffer and wrap it in a new ``Raster``.
    """

    width: int
    height: int
    mode: RasterMode
    data: bytes

    def __post_init__(self) -> None:
        if self.width < 1 or self.height < 1:
            raise ValueError("raster dimensions must be >= 1")
        ch = _CHANNELS.get(self.mode)
        if ch is None:
            raise ValueError(f"unsupported raster mode: {self.mode}")
        if len(self.data) != self.width * self.height * ch:
            raise ValueError("raster buffer size does not match dimensions")

    @property
    def channels(self) -> int:
        return _CHANNELS[self.mode]

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    @staticmethod
    def filled(width: int, height: int, mode: RasterMode, value: int) -> Raster:
        ch = _CHANNELS[mode]
        return Raster(width, height, mode, bytes([value & 0xFF]) * (width * height * ch))

    @staticmethod
    def from_image(img: Image.Image) -> Raster:
        """Copy a PIL image into a raster, flattening alpha onto white."""
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            rgba = img.convert("RGBA")
            bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
            img = Image.alpha_composite(bg, rgba)
        if img.mode == "L":
            return Raster(img.width, img.height, "L", img.tobytes())
        rgb = img.convert("RGB") if img.mode != "RGB" else img
        return Raster(rgb.width, rgb.height, "RGB", rgb.tobytes())

    def to_image(self) -> Image.Image:
        return Image.frombytes(self.mode, (self.width, self.height), self.data)

    def pixel(self, x: int, y: int) -> tuple[int, ...]:
        ch = self.channels
        i = (y * self.width + x) * ch
        return tuple(self.data[i : i + ch])


@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    w: int
    h: int

    def __post_init__(self) -> None:
        if self.w < 1 or self.h < 1:
            raise ValueError("bounding box extent must be >= 1")

    @staticmethod
    def full(raster: Raster) -> BoundingBox:
        return BoundingBox(0, 0, raster.width, raster.height)
