from __future__ import annotations

import io
import math
from typing import Final

import torch
from PIL import Image

from .config import PipelineConfig
from .errors import AppError, ErrorCode, status_for
from .ink.raster import BoundingBox, Raster
from .inference.types import PreprocessOutput

_SIGNATURE_VERSION: Final[str] = "v1"
_PREVIEW_SCALE: Final[int] = 5
_RESAMPLE: Final[dict[str, Image.Resampling]] = {
    "bilinear": Image.Resampling.BILINEAR,
    "box": Image.Resampling.BOX,
    "bicubic": Image.Resampling.BICUBIC,
    "lanczos": Image.Resampling.LANCZOS,
}

# Per-channel luma products. Indexing a table yields the very same doubles as
# evaluating 0.299 * r + 0.587 * g + 0.114 * b term by term.
_R: Final[tuple[float, ...]] = tuple(0.299 * v for v in range(256))
_G: Final[tuple[float, ...]] = tuple(0.587 * v for v in range(256))
_B: Final[tuple[float, ...]] = tuple(0.114 * v for v in range(256))


def luma(r: int, g: int, b: int) -> float:
    return _R[r] + _G[g] + _B[b]


def _lumas(raster: Raster) -> list[float]:
    buf = raster.data
    if raster.mode == "L":
        return [_R[v] + _G[v] + _B[v] for v in buf]
    return [_R[buf[i]] + _G[buf[i + 1]] + _B[buf[i + 2]] for i in range(0, len(buf), 3)]


def _round_half_up(v: float) -> int:
    return math.floor(v + 0.5)


def _to_byte(v: float) -> int:
    # Byte stores round half to even and saturate, like a clamped uint8 array.
    iv = round(v)
    if iv < 0:
        return 0
    if iv > 255:
        return 255
    return iv


def find_ink_bbox(raster: Raster, background_threshold: float) -> BoundingBox | None:
    """Return the tight box around every pixel darker than the threshold.

    ``None`` means no ink at all; callers fall back to ``BoundingBox.full``.
    """
    width = raster.width
    min_x, min_y, max_x, max_y = width, raster.height, -1, -1
    for i, lv in enumerate(_lumas(raster)):
        if lv < background_threshold:
            y, x = divmod(i, width)
            if x < min_x:
                min_x = x
            if x > max_x:
                max_x = x
            if y < min_y:
                min_y = y
            if y > max_y:
                max_y = y
    if max_x < 0:
        return None
    return BoundingBox(min_x, min_y, max_x - min_x + 1, max_y - min_y + 1)


def scale_and_place(raster: Raster, box: BoundingBox, cfg: PipelineConfig) -> Raster:
    """Fit the boxed ink into ``target_ink_size`` and center it on a white canvas."""
    if box.x < 0 or box.y < 0 or box.x + box.w > raster.width or box.y + box.h > raster.height:
        raise ValueError("bounding box lies outside the raster")
    side = cfg.canvas_size
    crop = raster.to_image().crop((box.x, box.y, box.x + box.w, box.y + box.h))
    scale = min(cfg.target_ink_size / box.w, cfg.target_ink_size / box.h)
    w = max(1, _round_half_up(box.w * scale))
    h = max(1, _round_half_up(box.h * scale))
    resized = crop.resize((w, h), resample=_RESAMPLE[cfg.resample])
    white: int | tuple[int, int, int] = 255 if crop.mode == "L" else (255, 255, 255)
    canvas = Image.new(crop.mode, (side, side), white)
    canvas.paste(resized, ((side - w) // 2, (side - h) // 2))
    return Raster.from_image(canvas)


def apply_tone(canvas: Raster, cfg: PipelineConfig) -> Raster:
    """Collapse to one intensity channel, then binarize and invert as configured."""
    thr = cfg.binarize_threshold
    out = bytearray(canvas.width * canvas.height)
    for i, gray in enumerate(_lumas(canvas)):
        if thr > 0:
            gray = 255.0 if gray >= thr else 0.0
        if cfg.invert:
            gray = 255 - gray
        out[i] = _to_byte(gray)
    return Raster(canvas.width, canvas.height, "L", bytes(out))


def ink_centroid(canvas: Raster, ink_is_light: bool) -> tuple[float, float] | None:
    """Intensity-weighted ink centroid using pixel centers, or None when blank."""
    if canvas.mode != "L":
        raise ValueError("centroid needs a single-channel canvas")
    width = canvas.width
    sum_w = 0
    sum_x = 0.0
    sum_y = 0.0
    for i, v in enumerate(canvas.data):
        w = v if ink_is_light else 255 - v
        if w > 0:
            y, x = divmod(i, width)
            sum_w += w
            sum_x += (x + 0.5) * w
            sum_y += (y + 0.5) * w
    if sum_w == 0:
        return None
    return (sum_x / sum_w, sum_y / sum_w)


def recenter_by_mass(canvas: Raster, cfg: PipelineConfig) -> tuple[Raster, tuple[int, int]]:
    """Shift content so its centroid lands on the canvas midpoint.

    The midpoint is ``(size - 1) / 2`` in pixel-center units (13.5 on a 28
    canvas). Content pushed past an edge is dropped. Returns the new canvas and
    the applied ``(dx, dy)``.
    """
    com = ink_centroid(canvas, ink_is_light=cfg.invert)
    if com is None:
        return canvas, (0, 0)
    cx, cy = com
    center_x = (canvas.width - 1) / 2.0
    center_y = (canvas.height - 1) / 2.0
    dx = _round_half_up(center_x - cx)
    dy = _round_half_up(center_y - cy)
    if dx == 0 and dy == 0:
        return canvas, (0, 0)
    return shift_canvas(canvas, dx, dy, background=0 if cfg.invert else 255), (dx, dy)


def shift_canvas(canvas: Raster, dx: int, dy: int, background: int) -> Raster:
    width, height = canvas.width, canvas.height
    src = canvas.data
    out = bytearray([background]) * (width * height)
    x0 = max(0, dx)
    x1 = min(width, width + dx)
    if x0 >= x1:
        return Raster(width, height, "L", bytes(out))
    for y in range(max(0, dy), min(height, height + dy)):
        row = y * width
        src_row = (y - dy) * width
        out[row + x0 : row + x1] = src[src_row + x0 - dx : src_row + x1 - dx]
    return Raster(width, height, "L", bytes(out))


def normalize_canvas(canvas: Raster, cfg: PipelineConfig) -> tuple[float, ...]:
    if canvas.mode != "L":
        raise ValueError("normalizer needs a single-channel canvas")
    mean = cfg.norm_mean
    std = cfg.norm_std
    return tuple(((v / 255.0) - mean) / std for v in canvas.data)


class InkPipeline:
    """Surface snapshot in, model-ready tensor out.

    Holds nothing but its configuration bundle; every call works on the raster
    it is handed and returns fresh objects.
    """

    def __init__(self, cfg: PipelineConfig) -> None:
        self._cfg = cfg

    @property
    def config(self) -> PipelineConfig:
        return self._cfg

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        side = self._cfg.canvas_size
        return (1, 1, side, side)

    def signature(self) -> str:
        return preprocess_signature(self._cfg)

    def run(
        self, raster: Raster, *, visualize: bool = False, visualize_max_kb: int = 16
    ) -> PreprocessOutput:
        cfg = self._cfg
        try:
            found = find_ink_bbox(raster, cfg.background_threshold)
            box = found if found is not None else BoundingBox.full(raster)
            placed = scale_and_place(raster, box, cfg)
            toned = apply_tone(placed, cfg)
            shift = (0, 0)
            final = toned
            if cfg.recenter:
                final, shift = recenter_by_mass(toned, cfg)
            values = normalize_canvas(final, cfg)
            t = torch.tensor(values, dtype=torch.float32).reshape(self.input_shape)
            visual = _visualize_png(final, visualize_max_kb) if visualize else None
        except (ValueError, OSError) as exc:
            raise AppError(
                ErrorCode.preprocessing_failed,
                status_for(ErrorCode.preprocessing_failed),
                str(exc),
            ) from None
        return PreprocessOutput(
            tensor=t,
            values=values,
            canvas=final,
            bbox=box,
            blank=found is None,
            shift=shift,
            visual_png=visual,
        )


def preprocess_signature(cfg: PipelineConfig) -> str:
    parts = [
        f"bbox<{cfg.background_threshold:g}",
        f"fit{cfg.target_ink_size}in{cfg.canvas_size}:{cfg.resample}",
        "gray",
    ]
    if cfg.binarize_threshold > 0:
        parts.append(f"thr{cfg.binarize_threshold}")
    if cfg.invert:
        parts.append("invert")
    if cfg.recenter:
        parts.append("com")
    parts.append(f"norm({cfg.norm_mean:g},{cfg.norm_std:g})")
    return f"{_SIGNATURE_VERSION}/" + "+".join(parts)


def _visualize_png(canvas: Raster, max_kb: int) -> bytes | None:
    img = canvas.to_image()
    vis = img.resize(
        (img.width * _PREVIEW_SCALE, img.height * _PREVIEW_SCALE),
        resample=Image.Resampling.NEAREST,
    )
    buf = io.BytesIO()
    vis.save(buf, format="PNG", optimize=True)
    b = buf.getvalue()
    if len(b) > max_kb * 1024:
        return None
    return b
