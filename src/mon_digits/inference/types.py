from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from torch import Tensor

from ..ink.raster import BoundingBox, Raster


@dataclass(frozen=True)
class Prediction:
    label: str
    index: int
    confidence: float
    probs: tuple[float, ...]


@dataclass(frozen=True)
class PredictOutput:
    prediction: Prediction
    model_id: str


@dataclass(frozen=True)
class PreprocessOutput:
    tensor: Tensor  # (1, 1, H, W) float32
    values: tuple[float, ...]  # same values, row-major
    canvas: Raster
    bbox: BoundingBox
    blank: bool
    shift: tuple[int, int]
    visual_png: bytes | None


Scores = Sequence[float]
