from __future__ import annotations

import base64
import io
from collections.abc import Callable
from typing import Annotated, Final

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from PIL import Image, ImageFile, ImageOps, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData

from ..config import Limits, Settings
from ..errors import AppError, ConfigMismatchError, ErrorCode, app_error, new_error
from ..inference.engine import InferenceEngine
from ..ink.raster import Raster
from ..logging import get_logger, init_logging
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..preprocess import preprocess_signature
from ..reader import DigitReader, ReadResult
from ..request_context import request_id_var
from ..session import DrawingSession, SessionRegistry
from ..sink import LoggingSink
from ..version import get_version
from .schemas import PredictResponse, StrokeRequest, SurfaceResponse

ImageFile.LOAD_TRUNCATED_IMAGES = False

_MAX_STROKE_POINTS: Final[int] = 4096


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_error error=%s", type(exc).__name__)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _initialize_engine(engine: InferenceEngine) -> None:
    """Load the model eagerly so contract mismatches abort startup.

    A missing or unreadable artifact only leaves the service not ready;
    ``ConfigMismatchError`` is allowed to escape.
    """
    try:
        engine.ensure_loaded()
    except AppError as err:
        get_logger().warning("model_not_loaded code=%s message=%s", err.code.value, err.message)


def _register_basic(app: FastAPI, engine: InferenceEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if engine.ready:
            return {"status": "ready"}
        err = engine.load_error()
        return {
            "status": "not_ready",
            "model_loaded": False,
            "reason": err.code.value if isinstance(err, AppError) else None,
            "build": get_version().build,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(app: FastAPI, engine: InferenceEngine) -> None:
    async def _model_active() -> dict[str, object]:
        man = engine.manifest
        if man is None:
            return {"model_loaded": False, "model_id": None}
        return {
            "model_loaded": True,
            "model_id": man.model_id,
            "version": man.version,
            "created_at": man.created_at.isoformat(),
            "schema_version": man.schema_version,
            "labels": list(man.labels),
            "input_shape": list(man.input_shape),
            "preprocess": man.preprocess.to_dict(),
            "preprocess_signature": preprocess_signature(man.preprocess),
        }

    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])


def _result_body(result: ReadResult) -> dict[str, object]:
    pred = result.prediction
    pre = result.preprocess
    visual_b64: str | None = (
        base64.b64encode(pre.visual_png).decode("ascii") if pre.visual_png else None
    )
    return {
        "label": pred.label,
        "index": int(pred.index),
        "confidence": float(pred.confidence),
        "probs": [float(p) for p in pred.probs],
        "model_id": result.model_id,
        "uncertain": bool(result.uncertain),
        "blank": bool(pre.blank),
        "bbox": {"x": pre.bbox.x, "y": pre.bbox.y, "w": pre.bbox.w, "h": pre.bbox.h},
        "shift": [pre.shift[0], pre.shift[1]],
        "visual_png_b64": visual_b64,
        "latency_ms": int(result.latency_ms),
    }


def _strict_validate_multipart(form: FormData) -> None:
    for key in form:
        if key != "file":
            raise app_error(ErrorCode.malformed_multipart, "Unexpected form field")
    n_files = len(form.getlist("file"))
    if n_files != 1:
        raise app_error(
            ErrorCode.malformed_multipart,
            "Multiple file parts not allowed" if n_files > 1 else "Missing file part",
        )


def _ensure_supported_content_type(ctype: str) -> None:
    if ctype not in ("image/png", "image/jpeg", "image/jpg"):
        raise app_error(ErrorCode.unsupported_media_type, "Only PNG and JPEG are supported")


def _load_snapshot(raw: bytes, limits: Limits) -> Raster:
    """Decode an uploaded drawing into the same raster a surface snapshot yields."""
    if len(raw) > limits.max_bytes:
        raise app_error(ErrorCode.too_large, "File exceeds size limit")
    try:
        img = Image.open(io.BytesIO(raw))
        w, h = img.size
        if max(w, h) > limits.max_side_px:
            raise app_error(ErrorCode.bad_dimensions, "Image dimensions too large")
        img.load()
    except UnidentifiedImageError:
        raise app_error(ErrorCode.invalid_image, "Failed to decode image") from None
    except Image.DecompressionBombError:
        raise app_error(ErrorCode.too_large, "Decompression bomb triggered") from None
    except OSError:
        raise app_error(ErrorCode.invalid_image, "Failed to decode image") from None
    upright = ImageOps.exif_transpose(img)
    return Raster.from_image(upright if upright is not None else img)


def _register_read(
    app: FastAPI,
    dep_api_key: DependsParamType,
    reader: DigitReader,
    limits: Limits,
) -> None:
    async def _read_digit(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        visualize: bool = False,
        content_length: Annotated[int | None, Header(alias="Content-Length")] = None,
    ) -> dict[str, object]:
        form = await request.form()
        _strict_validate_multipart(form)
        _ensure_supported_content_type((file.content_type or "").lower())
        if content_length is not None and content_length > limits.max_bytes:
            raise app_error(ErrorCode.too_large, "Request body too large")
        raw = await file.read()
        raster = _load_snapshot(raw, limits)
        result = await run_in_threadpool(reader.read, raster, visualize=visualize)
        return _result_body(result)

    app.add_api_route(
        "/v1/read",
        _read_digit,
        methods=["POST"],
        response_model=PredictResponse,
        dependencies=[dep_api_key],
    )


def _surface_body(sess: DrawingSession) -> dict[str, object]:
    w, h = sess.surface.size
    return {
        "surface_id": sess.session_id,
        "width": w,
        "height": h,
        "stroke_width": sess.surface.stroke_width,
        "strokes": sess.surface.stroke_count,
    }


def _register_surfaces(
    app: FastAPI, dep_api_key: DependsParamType, registry: SessionRegistry
) -> None:
    async def _create() -> dict[str, object]:
        return _surface_body(registry.create())

    async def _add_stroke(surface_id: str, body: StrokeRequest) -> dict[str, object]:
        sess = registry.get(surface_id)
        if not body.points or len(body.points) > _MAX_STROKE_POINTS:
            raise app_error(ErrorCode.invalid_stroke)
        try:
            sess.add_stroke(body.points)
        except ValueError as exc:
            raise app_error(ErrorCode.invalid_stroke, str(exc)) from None
        return _surface_body(sess)

    async def _clear(surface_id: str) -> dict[str, object]:
        sess = registry.get(surface_id)
        sess.clear()
        return _surface_body(sess)

    async def _predict(surface_id: str, visualize: bool = False) -> dict[str, object]:
        sess = registry.get(surface_id)
        result = await run_in_threadpool(sess.predict, visualize=visualize)
        return _result_body(result)

    async def _delete(surface_id: str) -> dict[str, object]:
        registry.remove(surface_id)
        return {"ok": True}

    deps = [dep_api_key]
    app.add_api_route(
        "/v1/surfaces",
        _create,
        methods=["POST"],
        response_model=SurfaceResponse,
        dependencies=deps,
    )
    app.add_api_route(
        "/v1/surfaces/{surface_id}/strokes",
        _add_stroke,
        methods=["POST"],
        response_model=SurfaceResponse,
        dependencies=deps,
    )
    app.add_api_route(
        "/v1/surfaces/{surface_id}/strokes",
        _clear,
        methods=["DELETE"],
        response_model=SurfaceResponse,
        dependencies=deps,
    )
    app.add_api_route(
        "/v1/surfaces/{surface_id}/predict",
        _predict,
        methods=["POST"],
        response_model=PredictResponse,
        dependencies=deps,
    )
    app.add_api_route(
        "/v1/surfaces/{surface_id}", _delete, methods=["DELETE"], dependencies=deps
    )


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads from env and TOML.
    - `engine_provider`: Optional provider for a custom `InferenceEngine` (primarily for tests).

    Raises `ConfigMismatchError` when the active model and its preprocessing
    bundle disagree on the input shape.
    """
    s = settings or Settings.load()
    init_logging()
    app = FastAPI(title="mon-digits", version=get_version().version)
    app.add_middleware(RequestIdMiddleware)

    engine = engine_provider() if engine_provider is not None else InferenceEngine(s)
    try:
        _initialize_engine(engine)
    except ConfigMismatchError as exc:
        get_logger().critical("model_config_mismatch error=%s", exc)
        raise

    reader = DigitReader(engine, s, sink=LoggingSink())
    registry = SessionRegistry(s, reader)
    limits = Limits.from_settings(s)
    api_dep: DependsParamType = Depends(api_key_dependency(s))

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    app.state.engine = engine
    app.state.reader = reader
    app.state.registry = registry

    _register_basic(app, engine)
    _register_models(app, engine)
    _register_read(app, api_dep, reader, limits)
    _register_surfaces(app, api_dep, registry)
    return app
