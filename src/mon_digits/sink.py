from __future__ import annotations

from typing import Protocol

from .errors import AppError
from .ink.raster import Raster
from .logging import log_event
from .reader import ReadResult


class ResultSink(Protocol):
    def show_preview(self, canvas: Raster) -> None: ...
    def show_prediction(self, result: ReadResult) -> None: ...
    def show_error(self, err: AppError) -> None: ...


class LoggingSink:
    """Sink that reports outcomes as structured log events."""

    def show_preview(self, canvas: Raster) -> None:
        return None

    def show_prediction(self, result: ReadResult) -> None:
        pred = result.prediction
        log_event(
            "read_finished",
            fields={
                "latency_ms": result.latency_ms,
                "label": pred.label,
                "index": pred.index,
                "confidence": float(pred.confidence),
                "model_id": result.model_id,
                "uncertain": result.uncertain,
                "blank": result.preprocess.blank,
                "shift_x": result.preprocess.shift[0],
                "shift_y": result.preprocess.shift[1],
            },
        )

    def show_error(self, err: AppError) -> None:
        log_event("read_failed", fields={"code": err.code.value})
