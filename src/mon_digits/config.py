from __future__ import annotations

import os
import tomllib
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/mon_digits.toml")
_RESAMPLE_NAMES: Final[frozenset[str]] = frozenset({"bilinear", "box", "bicubic", "lanczos"})


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0
    port: int = 8081


@dataclass(frozen=True)
class DigitsConfig:
    model_dir: Path = Path("/data/digits/models")
    active_model: str = "mon_digit_cnn_v1"
    uncertain_threshold: float = 0.70
    max_image_mb: int = 2
    max_image_side_px: int = 1024
    predict_timeout_seconds: int = 5
    visualize_max_kb: int = 16
    surface_size: int = 256
    stroke_width: int = 18
    max_surfaces: int = 64


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the check
    api_key: str = ""


@dataclass(frozen=True)
class PipelineConfig:
    """Preprocessing bundle paired with one model artifact.

    The values only make sense as a set: they must match the normalization the
    paired model saw during training. ``invert`` and ``recenter`` have no
    default; the manifest shipped with the weights has to state them.
    """

    invert: bool
    recenter: bool
    canvas_size: int = 28
    target_ink_size: int = 20
    background_threshold: float = 250.0
    binarize_threshold: int = 0
    resample: str = "bilinear"
    norm_mean: float = 0.5
    norm_std: float = 0.5

    def __post_init__(self) -> None:
        if self.canvas_size < 2:
            raise ValueError("canvas_size must be >= 2")
        if not (1 <= self.target_ink_size < self.canvas_size):
            raise ValueError("target_ink_size must be in [1, canvas_size)")
        if not (0.0 < self.background_threshold <= 256.0):
            raise ValueError("background_threshold must be in (0, 256]")
        if not (0 <= self.binarize_threshold <= 255):
            raise ValueError("binarize_threshold must be in [0, 255]")
        if self.resample not in _RESAMPLE_NAMES:
            raise ValueError(f"unsupported resample filter: {self.resample}")
        if self.norm_std <= 0.0:
            raise ValueError("norm_std must be > 0")

    @staticmethod
    def from_dict(d: dict[str, object]) -> PipelineConfig:
        inv = d.get("invert")
        rec = d.get("recenter")
        if not isinstance(inv, bool) or not isinstance(rec, bool):
            raise ValueError("preprocess must state invert and recenter explicitly")
        out = PipelineConfig(invert=inv, recenter=rec)
        if "canvas_size" in d:
            out = replace(out, canvas_size=int(str(d["canvas_size"])))
        if "target_ink_size" in d:
            out = replace(out, target_ink_size=int(str(d["target_ink_size"])))
        if "background_threshold" in d:
            out = replace(out, background_threshold=float(str(d["background_threshold"])))
        if "binarize_threshold" in d:
            out = replace(out, binarize_threshold=int(str(d["binarize_threshold"])))
        if "resample" in d:
            out = replace(out, resample=str(d["resample"]).strip().lower())
        if "norm_mean" in d:
            out = replace(out, norm_mean=float(str(d["norm_mean"])))
        if "norm_std" in d:
            out = replace(out, norm_std=float(str(d["norm_std"])))
        return out

    def to_dict(self) -> dict[str, object]:
        return dict(asdict(self))


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    digits: DigitsConfig
    security: SecurityConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("MON_DIGITS_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            digits=_load_digits_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            digits=_merge_digits(base.digits, _toml_table(raw, "digits")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        p = int(pt)
        if not (1 <= p <= 65535):
            raise RuntimeError("APP__PORT out of range")
        a = replace(a, port=p)
    return a


def _load_digits_from_env() -> DigitsConfig:
    d = DigitsConfig()
    md = os.getenv("DIGITS__MODEL_DIR")
    am = os.getenv("DIGITS__ACTIVE_MODEL")
    ut = os.getenv("DIGITS__UNCERTAIN_THRESHOLD")
    mb = os.getenv("DIGITS__MAX_IMAGE_MB")
    mx = os.getenv("DIGITS__MAX_IMAGE_SIDE_PX")
    to = os.getenv("DIGITS__PREDICT_TIMEOUT_SECONDS")
    vk = os.getenv("DIGITS__VISUALIZE_MAX_KB")
    ss = os.getenv("DIGITS__SURFACE_SIZE")
    sw = os.getenv("DIGITS__STROKE_WIDTH")
    ms = os.getenv("DIGITS__MAX_SURFACES")
    if md:
        d = replace(d, model_dir=Path(md))
    if am:
        d = replace(d, active_model=am)
    if ut is not None:
        d = replace(d, uncertain_threshold=float(ut))
    if mb is not None:
        d = replace(d, max_image_mb=int(mb))
    if mx is not None:
        d = replace(d, max_image_side_px=int(mx))
    if to is not None:
        d = replace(d, predict_timeout_seconds=int(to))
    if vk is not None:
        d = replace(d, visualize_max_kb=int(vk))
    if ss is not None:
        d = replace(d, surface_size=int(ss))
    if sw is not None:
        d = replace(d, stroke_width=int(sw))
    if ms is not None:
        d = replace(d, max_surfaces=int(ms))
    return d


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    if "port" in data:
        port = int(str(data["port"]))
        if not (1 <= port <= 65535):
            raise RuntimeError("port out of range")
        out = replace(out, port=port)
    return out


def _merge_digits(base: DigitsConfig, data: dict[str, object]) -> DigitsConfig:
    out = base
    if "model_dir" in data:
        out = replace(out, model_dir=Path(str(data["model_dir"])))
    if "active_model" in data:
        out = replace(out, active_model=str(data["active_model"]))
    if "uncertain_threshold" in data:
        out = replace(out, uncertain_threshold=float(str(data["uncertain_threshold"])))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=int(str(data["max_image_mb"])))
    if "max_image_side_px" in data:
        out = replace(out, max_image_side_px=int(str(data["max_image_side_px"])))
    if "predict_timeout_seconds" in data:
        out = replace(out, predict_timeout_seconds=int(str(data["predict_timeout_seconds"])))
    if "visualize_max_kb" in data:
        out = replace(out, visualize_max_kb=int(str(data["visualize_max_kb"])))
    if "surface_size" in data:
        out = replace(out, surface_size=int(str(data["surface_size"])))
    if "stroke_width" in data:
        out = replace(out, stroke_width=int(str(data["stroke_width"])))
    if "max_surfaces" in data:
        out = replace(out, max_surfaces=int(str(data["max_surfaces"])))
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.digits.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.digits.max_image_side_px),
        )
