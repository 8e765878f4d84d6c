from __future__ import annotations

from .raster import BoundingBox, Raster, RasterMode
from .surface import InkSurface, Point

__all__ = ["BoundingBox", "InkSurface", "Point", "Raster", "RasterMode"]
