from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class BoxModel:
    x: int
    y: int
    w: int
    h: int


@pydantic_dataclass(frozen=True)
class PredictResponse:
    label: str
    index: int
    confidence: float
    probs: list[float]
    model_id: str
    uncertain: bool
    blank: bool
    bbox: BoxModel
    shift: list[int]
    visual_png_b64: str | None
    latency_ms: int


@pydantic_dataclass(frozen=True)
class StrokeRequest:
    points: list[tuple[float, float]]


@pydantic_dataclass(frozen=True)
class SurfaceResponse:
    surface_id: str
    width: int
    height: int
    stroke_width: int
    strokes: int
