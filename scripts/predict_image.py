from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from pathlib import Path

from PIL import Image

from mon_digits.config import Settings
from mon_digits.errors import AppError
from mon_digits.inference.engine import InferenceEngine
from mon_digits.ink.raster import Raster
from mon_digits.logging import get_logger, init_logging
from mon_digits.reader import DigitReader, ReadResult
from mon_digits.sink import LoggingSink


@dataclass(frozen=True)
class PredictArgs:
    image: Path
    model_dir: Path | None
    model_id: str | None
    preview: Path | None


def parse_args(argv: list[str] | None = None) -> PredictArgs:
    ap = argparse.ArgumentParser(description="Classify a handwritten digit image")
    ap.add_argument("image", help="PNG or JPEG drawing (dark ink on a light background)")
    ap.add_argument("--model-dir", default=None, help="Models root (overrides config)")
    ap.add_argument("--model-id", default=None, help="Model id folder name (overrides config)")
    ap.add_argument("--preview", default=None, help="Write the normalized canvas PNG here")
    a = ap.parse_args(argv)
    return PredictArgs(
        image=Path(str(a.image)),
        model_dir=Path(str(a.model_dir)) if a.model_dir else None,
        model_id=str(a.model_id) if a.model_id else None,
        preview=Path(str(a.preview)) if a.preview else None,
    )


def settings_for(args: PredictArgs, base: Settings) -> Settings:
    digits = base.digits
    if args.model_dir is not None:
        digits = replace(digits, model_dir=args.model_dir)
    if args.model_id is not None:
        digits = replace(digits, active_model=args.model_id)
    return replace(base, digits=digits)


def run(args: PredictArgs, settings: Settings) -> ReadResult:
    engine = InferenceEngine(settings)
    try:
        with Image.open(args.image) as img:
            raster = Raster.from_image(img)
        result = DigitReader(engine, settings, sink=LoggingSink()).read(raster)
    finally:
        engine.shutdown()
    if args.preview is not None:
        result.preprocess.canvas.to_image().save(args.preview, format="PNG")
    return result


def main(argv: list[str] | None = None) -> int:
    init_logging()
    args = parse_args(argv)
    settings = settings_for(args, Settings.load())
    try:
        result = run(args, settings)
    except AppError as err:
        get_logger().error("predict_image_failed code=%s message=%s", err.code.value, err.message)
        return 2
    pred = result.prediction
    get_logger().info(
        "predict_image label=%s confidence=%.4f uncertain=%s",
        pred.label,
        pred.confidence,
        result.uncertain,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
