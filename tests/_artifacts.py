from __future__ import annotations

import io
import json
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import torch
from PIL import Image, ImageDraw
from torch import Tensor, nn

from mon_digits.config import AppConfig, DigitsConfig, SecurityConfig, Settings
from mon_digits.ink.raster import Raster

MON_LABELS: Final[list[str]] = ["၀", "၁", "၂", "၃", "၄", "၅", "၆", "၇", "၈", "၉"]
MODEL_ID: Final[str] = "mon_digit_cnn_v1"


class FixedScores(nn.Module):
    """Returns the same raw scores for every input row."""

    def __init__(self, scores: list[float]) -> None:
        super().__init__()
        self.register_buffer("scores", torch.tensor(scores, dtype=torch.float32))

    def forward(self, x: Tensor) -> Tensor:
        return self.scores.unsqueeze(0).expand([x.size(0), -1])


class InkMass(nn.Module):
    """Two classes: index 0 for an empty canvas, index 1 once light ink appears."""

    def forward(self, x: Tensor) -> Tensor:
        m = x.mean() + 1.0
        return torch.stack([-m, m]).unsqueeze(0) * 10.0


def preprocess_table(invert: bool = True, recenter: bool = True, **extra: object) -> dict[str, object]:
    out: dict[str, object] = {"invert": invert, "recenter": recenter}
    out.update(extra)
    return out


def manifest_dict(
    *,
    model_id: str = MODEL_ID,
    labels: list[str] | None = None,
    input_shape: list[int] | None = None,
    preprocess: dict[str, object] | None = None,
) -> dict[str, object]:
    return {
        "schema_version": "v1",
        "model_id": model_id,
        "version": "1.0.0",
        "created_at": datetime.now(UTC).isoformat(),
        "labels": labels if labels is not None else list(MON_LABELS),
        "input_shape": input_shape if input_shape is not None else [1, 1, 28, 28],
        "input_name": "input",
        "output_name": "logits",
        "preprocess": preprocess if preprocess is not None else preprocess_table(),
    }


def write_artifact(
    model_dir: Path,
    *,
    model_id: str = MODEL_ID,
    module: nn.Module | None = None,
    manifest: dict[str, object] | None = None,
) -> Path:
    """Write manifest.json plus model.pt; a TorchScript file when ``module`` is given."""
    dest = model_dir / model_id
    dest.mkdir(parents=True, exist_ok=True)
    man = manifest if manifest is not None else manifest_dict(model_id=model_id)
    (dest / "manifest.json").write_text(json.dumps(man, ensure_ascii=False), encoding="utf-8")
    if module is not None:
        scripted = torch.jit.script(module)
        torch.jit.save(scripted, (dest / "model.pt").as_posix())
    else:
        (dest / "model.pt").write_bytes(b"stub")
    return dest


def make_settings(model_dir: Path, *, api_key: str = "", **digits: object) -> Settings:
    dig = DigitsConfig(model_dir=model_dir, active_model=MODEL_ID)
    for k, v in digits.items():
        dig = replace(dig, **{k: v})
    return Settings(app=AppConfig(threads=2), digits=dig, security=SecurityConfig(api_key=api_key))


def drawing(size: int, rects: list[tuple[int, int, int, int]]) -> Raster:
    """White RGB raster with black filled rectangles (inclusive corners)."""
    img = Image.new("RGB", (size, size), (255, 255, 255))
    draw = ImageDraw.Draw(img)
    for r in rects:
        draw.rectangle(r, fill=(0, 0, 0))
    return Raster.from_image(img)


def gray_canvas(size: int, fill: int, block: tuple[int, int, int, int], value: int) -> Raster:
    """Single-channel canvas with ``block`` (x0, y0, x1, y1 exclusive) set to ``value``."""
    buf = bytearray([fill]) * (size * size)
    x0, y0, x1, y1 = block
    for y in range(y0, y1):
        for x in range(x0, x1):
            buf[y * size + x] = value
    return Raster(size, size, "L", bytes(buf))


def png_bytes(raster: Raster) -> bytes:
    buf = io.BytesIO()
    raster.to_image().save(buf, format="PNG")
    return buf.getvalue()
