from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, TypedDict

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "mon_digits"
_INT_FIELDS: Final[frozenset[str]] = frozenset(
    {"latency_ms", "index", "shift_x", "shift_y", "strokes"}
)
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset({"confidence"})
_BOOL_FIELDS: Final[frozenset[str]] = frozenset({"uncertain", "blank"})
_STR_FIELDS: Final[frozenset[str]] = frozenset({"label", "model_id", "surface_id", "code"})


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = request_id_var.get()
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        if rid:
            payload["request_id"] = rid
        extra = _parse_evt_fields(msg)
        if extra:
            if "event" in extra:
                payload["message"] = str(extra.pop("event"))
            payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter for interactive terminals."""

    _RESET = "\x1b[0m"
    _BOLD = "\x1b[1m"
    _DIM = "\x1b[2m"
    _FG_GRAY = "\x1b[90m"
    _FG_RED = "\x1b[91m"
    _FG_GREEN = "\x1b[92m"
    _FG_YELLOW = "\x1b[93m"
    _FG_BLUE = "\x1b[94m"
    _FG_MAGENTA = "\x1b[95m"
    _FG_CYAN = "\x1b[36m"

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(UTC).strftime("%H:%M:%S")
        msg = record.getMessage()
        parts: list[str] = [f"{self._DIM}[{ts}]{self._RESET}", self._level_tag(record.levelno)]
        if record.name and record.name != _LOGGER_NAME:
            parts.append(f"{self._DIM}{self._FG_GRAY}{record.name}{self._RESET}")

        if msg.startswith("EVT "):
            extra = _parse_evt_fields(msg)
            event = str(extra.pop("event", "event"))
            parts.append(f"{self._BOLD}{self._FG_BLUE}{event}{self._RESET}")
            for k, v in extra.items():
                parts.append(f"{self._FG_CYAN}{k}{self._RESET}={self._color_value(k, v)}")
        else:
            parts.append(msg)

        if record.exc_info:
            parts.append(f"\n{self._FG_RED}{self.formatException(record.exc_info)}{self._RESET}")
        rid = request_id_var.get()
        if rid:
            parts.append(f"{self._DIM}{self._FG_GRAY}rid={rid}{self._RESET}")
        return " ".join(parts)

    def _level_tag(self, level: int) -> str:
        if level >= logging.CRITICAL:
            c, name = self._FG_MAGENTA, "CRIT"
        elif level >= logging.ERROR:
            c, name = self._FG_RED, "ERROR"
        elif level >= logging.WARNING:
            c, name = self._FG_YELLOW, "WARN"
        elif level >= logging.INFO:
            c, name = self._FG_CYAN, "INFO"
        else:
            c, name = self._FG_GRAY, "DEBUG"
        return f"{self._BOLD}{c}[{name}]{self._RESET}"

    def _color_value(self, key: str, v: object) -> str:
        if key.endswith("_ms"):
            return f"{self._FG_MAGENTA}{v}{self._RESET}"
        if isinstance(v, bool):
            return f"{self._FG_CYAN}{'true' if v else 'false'}{self._RESET}"
        if isinstance(v, int | float):
            return f"{self._FG_GREEN}{v}{self._RESET}"
        return str(v)


class LogEvent(TypedDict, total=False):
    event: str
    latency_ms: int
    label: str
    index: int
    confidence: float
    model_id: str
    uncertain: bool
    blank: bool
    shift_x: int
    shift_y: int
    surface_id: str
    strokes: int
    code: str


def log_event(event: str, fields: Mapping[str, object] | None = None) -> None:
    parts: list[str] = [f"event={event}"]
    if fields is not None:
        for key, val in fields.items():
            if key in _BOOL_FIELDS and isinstance(val, bool):
                parts.append(f"{key}={'true' if val else 'false'}")
            elif key in _INT_FIELDS and isinstance(val, int) and not isinstance(val, bool):
                parts.append(f"{key}={val}")
            elif key in _FLOAT_FIELDS and isinstance(val, float):
                parts.append(f"{key}={val}")
            elif key in _STR_FIELDS and isinstance(val, str) and val and " " not in val:
                parts.append(f"{key}={val}")
    get_logger().info("EVT " + " ".join(parts))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith("EVT "):
        return {}
    out: dict[str, object] = {}
    for tok in msg[4:].split():
        if "=" not in tok:
            continue
        k, v = tok.split("=", 1)
        key = k.strip()
        if not key:
            continue
        val: object = v
        if key in _INT_FIELDS and v.lstrip("-").isdigit():
            val = int(v)
        elif key in _FLOAT_FIELDS:
            val = float(v) if _is_float_str(v) else v
        elif key in _BOOL_FIELDS:
            val = v.lower() in {"1", "true", "yes"}
        out[key] = val
    return out


def _is_float_str(s: str) -> bool:
    body = s[1:] if s.startswith("-") else s
    if not body:
        return False
    if "e" in body.lower():
        mant, _, exp = body.lower().partition("e")
        return _is_float_str(mant) and exp.lstrip("+-").isdigit()
    return body.count(".") <= 1 and body.replace(".", "", 1).isdigit()


LogStyle = Literal["json", "pretty", "auto"]


def _env_level() -> int:
    v = os.environ.get("MON_DIGITS_LOG_LEVEL")
    if not v:
        return logging.INFO
    return {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }.get(v.strip().upper(), logging.INFO)


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Re-binds the stream handler to the current ``sys.stdout`` on every call so
    that pytest's capture replacements are honoured, and never stacks more than
    one stream handler.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    lvl = _env_level()
    logger.setLevel(lvl)
    logger.propagate = _env_truthy("MON_DIGITS_LOG_PROPAGATE")

    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(lvl)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def _env_truthy(name: str) -> bool:
    v = os.environ.get(name)
    if not v:
        return False
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()
    force_json = _env_truthy("MON_DIGITS_LOG_JSON")
    force_pretty = _env_truthy("MON_DIGITS_LOG_PRETTY")
    isatty = getattr(sys.stdout, "isatty", None)
    is_tty = callable(isatty) and bool(isatty())
    if not force_json and (force_pretty or is_tty):
        return _ConsoleFormatter()
    return _JsonFormatter()
