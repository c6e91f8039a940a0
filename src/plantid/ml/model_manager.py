"""Model manager: locate, download, load, and cache ONNX classifiers.

A classifier asset is an ONNX file plus a newline-separated labels file.
Assets bundled in ``models_dir`` are used as-is; missing assets are fetched
from the Hugging Face Hub when downloads are allowed. Each model gets one
InferenceSession for the lifetime of the process.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi import onnxruntime_pybind11_state as ort_state
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from plantid.errors import ModelLoadError

if TYPE_CHECKING:
    from plantid.config import Settings

logger = logging.getLogger(__name__)

# ONNX Runtime raises its own exception types, none of which derive from RuntimeError.
ORT_ERRORS: tuple[type[Exception], ...] = (
    ort_state.Fail,
    ort_state.InvalidArgument,
    ort_state.NoSuchFile,
    ort_state.NoModel,
    ort_state.EngineError,
    ort_state.RuntimeException,
    ort_state.InvalidProtobuf,
    ort_state.ModelLoaded,
    ort_state.NotImplemented,
    ort_state.InvalidGraph,
    ort_state.EPFail,
    RuntimeError,
)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model file is available locally and return its path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_labels(self, model_name: str) -> list[str]:
        """Return the class labels for a model, in output order."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    PLANT_CLASSIFICATION = "plant_classification"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classifier."""

    name: str
    repo_id: str
    filename: str
    labels_filename: str
    subfolder: str | None
    task: ModelTask
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "plantnet_mobilenetv3": ModelSpec(
        name="plantnet_mobilenetv3",
        repo_id="plantid/plantid-models",
        filename="plantnet_mobilenetv3.onnx",
        labels_filename="plantnet_labels.txt",
        subfolder=None,
        task=ModelTask.PLANT_CLASSIFICATION,
        license="CC-BY-4.0",
    ),
    "plantnet_efficientnet_b0": ModelSpec(
        name="plantnet_efficientnet_b0",
        repo_id="plantid/plantid-models",
        filename="plantnet_efficientnet_b0.onnx",
        labels_filename="plantnet_labels.txt",
        subfolder=None,
        task=ModelTask.PLANT_CLASSIFICATION,
        license="CC-BY-4.0",
    ),
    "house_plants_vit_small": ModelSpec(
        name="house_plants_vit_small",
        repo_id="plantid/plantid-models",
        filename="model.onnx",
        labels_filename="labels.txt",
        subfolder="house_plants_vit_small",
        task=ModelTask.PLANT_CLASSIFICATION,
        license="Apache-2.0",
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Resolves classifier assets and caches their ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._labels: dict[str, list[str]] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model file, downloading it if allowed and missing."""
        spec = self._get_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        path = self._resolve_asset(spec, spec.filename)
        self._model_paths[model_name] = path
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except (*ORT_ERRORS, OSError) as exc:
            raise ModelLoadError(f"Cannot load {model_name} from {model_path}: {exc}") from exc

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def get_labels(self, model_name: str) -> list[str]:
        """Return the labels for ``model_name``; blank lines are skipped."""
        with self._lock:
            cached = self._labels.get(model_name)
            if cached is not None:
                return cached

        spec = self._get_spec(model_name)
        path = self._resolve_asset(spec, spec.labels_filename)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ModelLoadError(f"Cannot read labels for {model_name}: {exc}") from exc

        labels = [line.strip() for line in text.splitlines() if line.strip()]
        if not labels:
            raise ModelLoadError(f"Labels file for {model_name} is empty: {path}")

        with self._lock:
            self._labels.setdefault(model_name, labels)
            return self._labels[model_name]

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            self._labels.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise ModelLoadError(f"Unknown model: {model_name}") from None

    def _resolve_asset(self, spec: ModelSpec, filename: str) -> Path:
        local = self._models_dir / spec.subfolder / filename if spec.subfolder else self._models_dir / filename
        if local.is_file():
            return local

        if not self._settings.allow_download:
            raise ModelLoadError(f"Bundled asset missing for {spec.name}: {local}")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=filename,
                    subfolder=spec.subfolder,
                    local_dir=str(self._models_dir),
                )
            )
        except (HfHubHTTPError, OSError, ValueError) as exc:
            raise ModelLoadError(f"Cannot download {filename} for {spec.name}: {exc}") from exc

        logger.info("Downloaded %s for %s to %s", filename, spec.name, downloaded)
        return downloaded

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
