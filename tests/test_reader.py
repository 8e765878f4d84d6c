from __future__ import annotations

from pathlib import Path

import pytest

from mon_digits.errors import AppError, ErrorCode
from mon_digits.inference.engine import InferenceEngine
from mon_digits.ink.raster import Raster
from mon_digits.ink.surface import InkSurface
from mon_digits.reader import DigitReader, ReadResult
from tests._artifacts import (
    FixedScores,
    InkMass,
    make_settings,
    manifest_dict,
    preprocess_table,
    write_artifact,
)


class _RecordingSink:
    def __init__(self) -> None:
        self.previews: list[Raster] = []
        self.results: list[ReadResult] = []
        self.errors: list[AppError] = []

    def show_preview(self, canvas: Raster) -> None:
        self.previews.append(canvas)

    def show_prediction(self, result: ReadResult) -> None:
        self.results.append(result)

    def show_error(self, err: AppError) -> None:
        self.errors.append(err)


def _ink_mass_reader(tmp_path: Path, *, invert: bool) -> tuple[DigitReader, InferenceEngine]:
    man = manifest_dict(labels=["empty", "ink"], preprocess=preprocess_table(invert=invert))
    write_artifact(tmp_path, module=InkMass(), manifest=man)
    settings = make_settings(tmp_path)
    eng = InferenceEngine(settings)
    return DigitReader(eng, settings), eng


def _stroked() -> Raster:
    s = InkSurface(128, 128, 10)
    s.add_stroke([(30.0, 20.0), (90.0, 100.0)])
    return s.snapshot()


def test_polarity_matches_model_expectation(tmp_path: Path) -> None:
    reader, eng = _ink_mass_reader(tmp_path, invert=True)
    try:
        blank = reader.read(InkSurface(128, 128).snapshot())
        assert blank.prediction.label == "empty"
        assert blank.preprocess.blank is True
        drawn = reader.read(_stroked())
        assert drawn.prediction.label == "ink"
        assert drawn.preprocess.blank is False
    finally:
        eng.shutdown()


def test_wrong_polarity_flips_the_answer(tmp_path: Path) -> None:
    reader, eng = _ink_mass_reader(tmp_path, invert=False)
    try:
        # a white canvas now reads as a page full of light ink
        assert reader.read(InkSurface(128, 128).snapshot()).prediction.label == "ink"
    finally:
        eng.shutdown()


def test_sink_sees_preview_and_prediction(tmp_path: Path) -> None:
    write_artifact(tmp_path, module=FixedScores([0.0, 0.0, 9.0] + [0.0] * 7))
    settings = make_settings(tmp_path)
    eng = InferenceEngine(settings)
    sink = _RecordingSink()
    reader = DigitReader(eng, settings, sink=sink)
    try:
        res = reader.read(_stroked(), visualize=True)
        assert res.prediction.label == "၂"
        assert res.uncertain is False
        assert res.latency_ms >= 0
        assert res.preprocess.visual_png is not None
        assert len(sink.previews) == 1
        assert sink.previews[0].size == (28, 28)
        assert sink.results == [res]
        assert sink.errors == []
    finally:
        eng.shutdown()


def test_low_confidence_is_flagged_uncertain(tmp_path: Path) -> None:
    write_artifact(tmp_path, module=FixedScores([0.0] * 10))
    settings = make_settings(tmp_path)
    eng = InferenceEngine(settings)
    try:
        res = DigitReader(eng, settings).read(_stroked())
        assert res.prediction.index == 0
        assert res.uncertain is True
    finally:
        eng.shutdown()


def test_sink_sees_errors(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    eng = InferenceEngine(settings)
    sink = _RecordingSink()
    try:
        with pytest.raises(AppError) as ei:
            DigitReader(eng, settings, sink=sink).read(_stroked())
        assert ei.value.code is ErrorCode.service_not_ready
        assert sink.errors == [ei.value]
        assert sink.previews == []
    finally:
        eng.shutdown()
