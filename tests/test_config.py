from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

from mon_digits.config import Limits, PipelineConfig, Settings


def test_app_port_out_of_range_raises() -> None:
    env = os.environ.copy()
    env["APP__PORT"] = "70000"
    with pytest.raises(RuntimeError):
        _ = _load_with_env(env)


def test_defaults_without_toml() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = _clean_env()
        env["MON_DIGITS_CONFIG"] = (Path(td) / "missing.toml").as_posix()
        s = _load_with_env(env)
        assert s.app.port == 8081
        assert s.digits.active_model == "mon_digit_cnn_v1"
        assert abs(float(s.digits.uncertain_threshold) - 0.70) < 1e-9
        assert s.digits.surface_size == 256
        assert s.security.api_key == ""


def test_digits_toml_mapping() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text(
            """
[app]
threads = 3

[digits]
active_model = "mon_digit_cnn_v2"
uncertain_threshold = 0.42
stroke_width = 12
max_surfaces = 4
""".strip(),
            encoding="utf-8",
        )
        env = _clean_env()
        env["MON_DIGITS_CONFIG"] = p.as_posix()
        s = _load_with_env(env)
        assert s.app.threads == 3
        assert s.digits.active_model == "mon_digit_cnn_v2"
        assert abs(float(s.digits.uncertain_threshold) - 0.42) < 1e-6
        assert s.digits.stroke_width == 12
        assert s.digits.max_surfaces == 4


def test_security_api_key_enabled_false_disables_key() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text(
            """
[security]
api_key = "secret"
api_key_enabled = false
""".strip(),
            encoding="utf-8",
        )
        env = _clean_env()
        env["MON_DIGITS_CONFIG"] = p.as_posix()
        s = _load_with_env(env)
        assert s.security.api_key == ""


def test_invalid_toml_raises() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text("[digits\nbroken", encoding="utf-8")
        env = _clean_env()
        env["MON_DIGITS_CONFIG"] = p.as_posix()
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)


def test_env_overrides_happy_paths() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = _clean_env()
        env["DIGITS__MODEL_DIR"] = (Path(td) / "models").as_posix()
        env["DIGITS__VISUALIZE_MAX_KB"] = "2"
        env["DIGITS__PREDICT_TIMEOUT_SECONDS"] = "1"
        env["DIGITS__SURFACE_SIZE"] = "128"
        env["SECURITY__API_KEY"] = "k"
        env["MON_DIGITS_CONFIG"] = (Path(td) / "missing.toml").as_posix()
        s = _load_with_env(env)
        assert s.digits.model_dir.as_posix().endswith("models")
        assert int(s.digits.visualize_max_kb) == 2
        assert int(s.digits.predict_timeout_seconds) == 1
        assert s.digits.surface_size == 128
        assert s.security.api_key == "k"
        lim = Limits.from_settings(s)
        assert lim.max_bytes == 2 * 1024 * 1024


def test_pipeline_config_requires_polarity_and_recenter() -> None:
    with pytest.raises(ValueError):
        PipelineConfig.from_dict({"recenter": True})
    with pytest.raises(ValueError):
        PipelineConfig.from_dict({"invert": True})
    with pytest.raises(ValueError):
        PipelineConfig.from_dict({"invert": "yes", "recenter": True})
    cfg = PipelineConfig.from_dict({"invert": False, "recenter": True})
    assert cfg.invert is False
    assert cfg.canvas_size == 28
    assert cfg.target_ink_size == 20
    assert cfg.background_threshold == 250.0


def test_pipeline_config_overrides_and_round_trip() -> None:
    cfg = PipelineConfig.from_dict(
        {
            "invert": True,
            "recenter": False,
            "canvas_size": 32,
            "target_ink_size": 24,
            "binarize_threshold": 128,
            "resample": " Bicubic ",
            "norm_mean": 0.1307,
            "norm_std": 0.3081,
        }
    )
    assert cfg.resample == "bicubic"
    assert PipelineConfig.from_dict(cfg.to_dict()) == cfg


@pytest.mark.parametrize(
    "overrides",
    [
        {"canvas_size": 1},
        {"target_ink_size": 28},
        {"target_ink_size": 0},
        {"background_threshold": 0.0},
        {"binarize_threshold": 256},
        {"resample": "nearest"},
        {"norm_std": 0.0},
    ],
)
def test_pipeline_config_rejects_bad_values(overrides: dict[str, object]) -> None:
    d: dict[str, object] = {"invert": True, "recenter": True}
    d.update(overrides)
    with pytest.raises(ValueError):
        PipelineConfig.from_dict(d)


def _clean_env() -> dict[str, str]:
    return {
        k: v
        for k, v in os.environ.items()
        if not k.startswith(("APP__", "DIGITS__", "SECURITY__", "MON_DIGITS_"))
    }


def _load_with_env(env: dict[str, str]) -> Settings:
    old = os.environ.copy()
    try:
        os.environ.clear()
        for k, v in env.items():
            os.environ[k] = v
        return Settings.load()
    finally:
        os.environ.clear()
        for k, v in old.items():
            os.environ[k] = v
