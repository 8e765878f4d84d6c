from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .config import Settings
from .errors import AppError
from .inference.engine import InferenceEngine
from .inference.types import Prediction, PredictOutput, PreprocessOutput
from .ink.raster import Raster

if TYPE_CHECKING:
    from .sink import ResultSink


@dataclass(frozen=True)
class ReadResult:
    prediction: Prediction
    model_id: str
    preprocess: PreprocessOutput
    uncertain: bool
    latency_ms: int


class DigitReader:
    """Runs one captured raster through the paired pipeline and model."""

    def __init__(
        self, engine: InferenceEngine, settings: Settings, sink: ResultSink | None = None
    ) -> None:
        self._engine = engine
        self._settings = settings
        self._sink = sink

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    def read(
        self,
        raster: Raster,
        *,
        visualize: bool = False,
        on_submit: Callable[[Future[PredictOutput]], None] | None = None,
    ) -> ReadResult:
        try:
            result = self._read(raster, visualize, on_submit)
        except AppError as err:
            if self._sink is not None:
                self._sink.show_error(err)
            raise
        if self._sink is not None:
            self._sink.show_prediction(result)
        return result

    def _read(
        self,
        raster: Raster,
        visualize: bool,
        on_submit: Callable[[Future[PredictOutput]], None] | None,
    ) -> ReadResult:
        digits = self._settings.digits
        loaded = self._engine.ensure_loaded()
        t0 = time.perf_counter()
        pre = loaded.pipeline.run(
            raster, visualize=visualize, visualize_max_kb=int(digits.visualize_max_kb)
        )
        if self._sink is not None:
            self._sink.show_preview(pre.canvas)
        out = self._engine.predict(pre, on_submit=on_submit)
        dt_ms = int((time.perf_counter() - t0) * 1000.0)
        return ReadResult(
            prediction=out.prediction,
            model_id=out.model_id,
            preprocess=pre,
            uncertain=out.prediction.confidence < float(digits.uncertain_threshold),
            latency_ms=dt_ms,
        )
