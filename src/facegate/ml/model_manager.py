"""Model manager: resolve, load, and cache the pipeline's ONNX models.

Handles locating model files (local directory, optionally fetched from a
HuggingFace repository), creating and caching ONNX InferenceSessions, and the
one-time asynchronous load that the pipeline waits on or degrades around.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from facegate.ml.errors import InferenceError, ModelLoadFailure
from facegate.ml.runtime import OnnxRuntimeModel

if TYPE_CHECKING:
    from collections.abc import Sequence

    from facegate.config import Settings
    from facegate.ml.runtime import InferenceRuntime

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (the pipeline and tests depend on this, not on ONNX)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model file is available locally and return its path."""
        ...

    def get_runtime(self, model_name: str) -> InferenceRuntime:
        """Return a cached or newly loaded runtime for a model."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Release all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    FACE_PROPOSAL = "face_proposal"
    FACE_REFINE = "face_refine"
    FACE_OUTPUT = "face_output"
    FACE_EMBEDDING = "face_embedding"
    ANTI_SPOOFING = "anti_spoofing"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX model."""

    name: str
    task: ModelTask
    file_setting: str
    required: bool


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "pnet": ModelSpec(name="pnet", task=ModelTask.FACE_PROPOSAL, file_setting="pnet_file", required=True),
    "rnet": ModelSpec(name="rnet", task=ModelTask.FACE_REFINE, file_setting="rnet_file", required=True),
    "onet": ModelSpec(name="onet", task=ModelTask.FACE_OUTPUT, file_setting="onet_file", required=True),
    "mobilefacenet": ModelSpec(
        name="mobilefacenet",
        task=ModelTask.FACE_EMBEDDING,
        file_setting="embedding_file",
        required=True,
    ),
    "anti_spoofing": ModelSpec(
        name="anti_spoofing",
        task=ModelTask.ANTI_SPOOFING,
        file_setting="anti_spoofing_file",
        required=False,
    ),
}

CASCADE_MODELS: tuple[str, ...] = ("pnet", "rnet", "onet")
EMBEDDING_MODEL = "mobilefacenet"
ANTI_SPOOFING_MODEL = "anti_spoofing"


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedModel:
    session: InferenceSession
    runtime: OnnxRuntimeModel


class OnnxModelManager:
    """Locates, loads, and caches ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._models: dict[str, _CachedModel] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def filename_for(self, model_name: str) -> str:
        spec = self._get_spec(model_name)
        filename: str = getattr(self._settings, spec.file_setting)
        return filename

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model path, downloading it when a repo is configured.

        Raises:
            ModelLoadFailure: If the file is missing and no repo is configured,
                or the download fails.
        """
        filename = self.filename_for(model_name)

        cached = self._model_paths.get(model_name)
        if cached is not None and cached.exists():
            return cached

        local = self._models_dir / filename
        if local.exists():
            self._model_paths[model_name] = local
            return local

        repo_id = self._settings.model_repo
        if repo_id is None:
            raise ModelLoadFailure(model_name, f"{local} not found and FACEGATE_MODEL_REPO is not set")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=repo_id,
                    filename=filename,
                    local_dir=str(self._models_dir),
                )
            )
        except Exception as exc:
            raise ModelLoadFailure(model_name, f"download from {repo_id} failed: {exc}") from exc
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        return self._get_cached(model_name).session

    def get_runtime(self, model_name: str) -> InferenceRuntime:
        """Return the shape-introspected runtime wrapper for a model."""
        return self._get_cached(model_name).runtime

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._models.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._models.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _get_cached(self, model_name: str) -> _CachedModel:
        with self._lock:
            cached = self._models.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
            runtime = OnnxRuntimeModel(model_name, session)
        except InferenceError as exc:
            raise ModelLoadFailure(model_name, str(exc)) from exc
        except Exception as exc:
            raise ModelLoadFailure(model_name, f"cannot create session from {model_path}: {exc}") from exc

        with self._lock:
            # Another thread may have opened it while this one was loading.
            existing = self._models.get(model_name)
            if existing is not None:
                return existing
            entry = _CachedModel(session=session, runtime=runtime)
            self._models[model_name] = entry
            logger.info("Loaded session for %s", model_name)
            return entry

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts


# ---------------------------------------------------------------------------
# Asynchronous one-time load
# ---------------------------------------------------------------------------


class LoadState(StrEnum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"


@dataclass(frozen=True)
class LoadReport:
    """Outcome of loading every registered model."""

    runtimes: dict[str, InferenceRuntime] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def has(self, model_name: str) -> bool:
        return model_name in self.runtimes

    @property
    def missing_required(self) -> list[str]:
        return [name for name, spec in MODEL_REGISTRY.items() if spec.required and name not in self.runtimes]

    @property
    def cascade_available(self) -> bool:
        return all(self.has(name) for name in CASCADE_MODELS)

    @property
    def embedding_available(self) -> bool:
        return self.has(EMBEDDING_MODEL)


class ModelLoader:
    """Loads all models once, in the background, as an awaitable task.

    ``start()`` is idempotent. Cancelling the load returns the loader to
    ``NOT_LOADED`` and a later ``start()`` retries.
    """

    def __init__(self, manager: ModelManager, models: Sequence[str] | None = None) -> None:
        self._manager = manager
        self._models = tuple(models) if models is not None else tuple(MODEL_REGISTRY)
        self._task: asyncio.Task[LoadReport] | None = None
        self._report: LoadReport | None = None

    @property
    def state(self) -> LoadState:
        if self._report is not None:
            return LoadState.LOADED
        if self._task is None or self._task.done():
            return LoadState.NOT_LOADED
        return LoadState.LOADING

    @property
    def report(self) -> LoadReport | None:
        """The load report, or None until loading has finished."""
        return self._report

    def start(self) -> asyncio.Task[LoadReport]:
        """Schedule loading on the running loop, or return the pending task."""
        if self._task is not None and not self._task.cancelled():
            return self._task
        self._task = asyncio.get_running_loop().create_task(self._load_all(), name="facegate-model-load")
        return self._task

    async def wait(self) -> LoadReport:
        """Wait for loading to finish; cancelling the waiter leaves the load running."""
        return await asyncio.shield(self.start())

    def cancel(self) -> None:
        """Abort an in-flight load."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            self._task = None

    async def _load_all(self) -> LoadReport:
        loop = asyncio.get_running_loop()
        runtimes: dict[str, InferenceRuntime] = {}
        errors: dict[str, str] = {}
        try:
            for name in self._models:
                try:
                    runtime = await loop.run_in_executor(None, self._manager.get_runtime, name)
                except ModelLoadFailure as exc:
                    errors[name] = exc.reason
                    if MODEL_REGISTRY[name].required:
                        logger.error("%s", exc)
                    else:
                        logger.warning("Optional model %s not loaded: %s", name, exc.reason)
                else:
                    runtimes[name] = runtime
        except asyncio.CancelledError:
            logger.info("Model loading cancelled")
            raise

        report = LoadReport(runtimes=runtimes, errors=errors)
        self._report = report
        logger.info("Model loading finished: %d loaded, %d failed", len(runtimes), len(errors))
        return report
