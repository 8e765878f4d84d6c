from __future__ import annotations

from pathlib import Path

from PIL import Image

from mon_digits.config import AppConfig, DigitsConfig, SecurityConfig, Settings
from scripts import predict_image as pi
from tests._artifacts import FixedScores, drawing, make_settings, write_artifact


def test_parse_args_and_overrides(tmp_path: Path) -> None:
    args = pi.parse_args(
        ["digit.png", "--model-dir", tmp_path.as_posix(), "--model-id", "alt", "--preview", "p.png"]
    )
    assert args.image == Path("digit.png")
    assert args.preview == Path("p.png")
    base = Settings(app=AppConfig(), digits=DigitsConfig(), security=SecurityConfig())
    s = pi.settings_for(args, base)
    assert s.digits.model_dir == tmp_path
    assert s.digits.active_model == "alt"
    untouched = pi.settings_for(pi.parse_args(["digit.png"]), base)
    assert untouched == base


def test_run_reads_image_and_writes_preview(tmp_path: Path) -> None:
    models = tmp_path / "models"
    write_artifact(models, module=FixedScores([0.0, 0.0, 0.0, 7.0] + [0.0] * 6))
    img_path = tmp_path / "digit.png"
    drawing(80, [(30, 10, 44, 70)]).to_image().save(img_path, format="PNG")
    preview = tmp_path / "preview.png"
    args = pi.PredictArgs(image=img_path, model_dir=None, model_id=None, preview=preview)
    result = pi.run(args, make_settings(models))
    assert result.prediction.label == "၃"
    with Image.open(preview) as im:
        assert im.size == (28, 28)
        assert im.mode == "L"


def test_main_reports_missing_model(tmp_path: Path) -> None:
    img_path = tmp_path / "digit.png"
    drawing(16, [(4, 4, 8, 8)]).to_image().save(img_path, format="PNG")
    code = pi.main([img_path.as_posix(), "--model-dir", (tmp_path / "none").as_posix()])
    assert code == 2
