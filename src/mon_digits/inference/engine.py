from __future__ import annotations

import os
import pickle
import zipfile
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import torch
from torch import Tensor

from ..config import Settings
from ..errors import ConfigMismatchError, ErrorCode, app_error
from ..logging import get_logger, log_event
from ..preprocess import InkPipeline
from .manifest import ModelManifest
from .ranking import rank_scores
from .resource import OnceResource
from .types import PredictOutput, PreprocessOutput

_MANIFEST_FILE: Final[str] = "manifest.json"
_MODEL_FILE: Final[str] = "model.pt"
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)
_CALL_ERRORS: Final[tuple[type[BaseException], ...]] = (RuntimeError, ValueError, TypeError)


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> object: ...


ModelLoader = Callable[[Path], TorchModel]


@dataclass(frozen=True)
class LoadedModel:
    module: TorchModel
    manifest: ModelManifest
    pipeline: InkPipeline


class InferenceEngine:
    """Bounded thread-pool inference over an opaque TorchScript classifier.

    The artifact in ``<model_dir>/<active_model>/`` is loaded at most once.
    Every caller, including ones racing on the first request, shares the load
    outcome; a failed load is reported again on each call, never retried.
    """

    def __init__(self, settings: Settings, loader: ModelLoader | None = None) -> None:
        self._settings = settings
        self._logger = get_logger()
        self._loader: ModelLoader = loader if loader is not None else _load_torchscript
        self._pool = _make_pool(settings)
        self._resource: OnceResource[LoadedModel] = OnceResource(self._load_active)
        torch.set_num_threads(1)

    @property
    def artifact_dir(self) -> Path:
        return self._settings.digits.model_dir / self._settings.digits.active_model

    @property
    def ready(self) -> bool:
        return self._resource.ready

    @property
    def loaded(self) -> LoadedModel | None:
        return self._resource.peek()

    @property
    def manifest(self) -> ModelManifest | None:
        lm = self._resource.peek()
        return lm.manifest if lm is not None else None

    @property
    def model_id(self) -> str | None:
        man = self.manifest
        return man.model_id if man is not None else None

    def load_error(self) -> BaseException | None:
        return self._resource.failure()

    def ensure_loaded(self) -> LoadedModel:
        return self._resource.get()

    def submit_predict(self, pre: PreprocessOutput) -> Future[PredictOutput]:
        return self._pool.submit(self._predict_impl, pre.tensor)

    def predict(
        self,
        pre: PreprocessOutput,
        timeout_s: float | None = None,
        on_submit: Callable[[Future[PredictOutput]], None] | None = None,
    ) -> PredictOutput:
        """Run one prediction and wait for it.

        ``on_submit`` receives the pool future before the wait starts. A timeout
        stops the wait, not a model call that already started; that future
        stays pending until the call returns.
        """
        wait = (
            float(self._settings.digits.predict_timeout_seconds) if timeout_s is None else timeout_s
        )
        fut = self.submit_predict(pre)
        if on_submit is not None:
            on_submit(fut)
        try:
            return fut.result(timeout=wait)
        except FutureTimeout:
            fut.cancel()
            raise app_error(ErrorCode.timeout, "Prediction timed out") from None

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _predict_impl(self, tensor: Tensor) -> PredictOutput:
        loaded = self.ensure_loaded()
        man = loaded.manifest
        if tuple(int(d) for d in tensor.shape) != man.input_shape:
            raise ValueError("input tensor shape does not match the loaded model")
        try:
            with torch.no_grad():
                out = loaded.module(tensor.to(dtype=torch.float32))
            scores = _scores_from_output(out, man.output_name)
            pred = rank_scores(scores, man.labels)
        except _CALL_ERRORS as exc:
            self._logger.info("predict_failed error=%s", type(exc).__name__)
            raise app_error(ErrorCode.model_unavailable, "Inference call failed") from None
        return PredictOutput(prediction=pred, model_id=man.model_id)

    def _load_active(self) -> LoadedModel:
        model_dir = self.artifact_dir
        manifest_path = model_dir / _MANIFEST_FILE
        model_path = model_dir / _MODEL_FILE
        if not (manifest_path.exists() and model_path.exists()):
            self._logger.info("model_artifact_missing dir=%s", model_dir.as_posix())
            raise app_error(ErrorCode.service_not_ready)
        try:
            manifest = ModelManifest.from_path(manifest_path)
        except (OSError, ValueError):
            self._logger.info("manifest_load_failed")
            raise app_error(ErrorCode.model_unavailable, "Invalid model manifest") from None
        pipeline = InkPipeline(manifest.preprocess)
        if pipeline.input_shape != manifest.input_shape:
            raise ConfigMismatchError(
                f"model expects input {list(manifest.input_shape)} but the preprocessing "
                f"bundle produces {list(pipeline.input_shape)}"
            )
        try:
            module = self._loader(model_path)
        except _LOAD_ERRORS:
            self._logger.info("model_load_failed")
            raise app_error(ErrorCode.model_unavailable, "Failed to load model") from None
        module.eval()
        _probe(module, manifest)
        log_event("model_loaded", {"model_id": manifest.model_id})
        return LoadedModel(module=module, manifest=manifest, pipeline=pipeline)


def _probe(module: TorchModel, manifest: ModelManifest) -> None:
    """Run one blank canvas through the model to pin its input/output contract."""
    try:
        with torch.no_grad():
            out = module(torch.zeros(manifest.input_shape, dtype=torch.float32))
        scores = _scores_from_output(out, manifest.output_name)
    except _CALL_ERRORS as exc:
        raise ConfigMismatchError(
            f"model rejected an input of shape {list(manifest.input_shape)}: {exc}"
        ) from exc
    if len(scores) != manifest.n_classes:
        raise ConfigMismatchError(
            f"model returned {len(scores)} scores for {manifest.n_classes} labels"
        )


def _scores_from_output(out: object, output_name: str) -> list[float]:
    if isinstance(out, dict):
        if output_name not in out:
            raise ValueError(f"model output has no '{output_name}' entry")
        out = out[output_name]
    elif isinstance(out, tuple | list):
        if not out:
            raise ValueError("model returned no outputs")
        out = out[0]
    if not isinstance(out, Tensor):
        raise TypeError("model output is not a tensor")
    flat = out.detach().to(dtype=torch.float64).reshape(-1)
    if out.ndim == 2 and int(out.shape[0]) != 1:
        raise ValueError("model output must hold a single row of scores")
    return [float(v) for v in flat.tolist()]


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(8, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")


if TYPE_CHECKING:

    def _load_torchscript(path: Path) -> TorchModel: ...
else:

    def _load_torchscript(path: Path) -> TorchModel:
        return torch.jit.load(path.as_posix(), map_location=torch.device("cpu"))

