"""Model manager: download and load the classifier with a two-tier policy.

The custom Food-101 classifier and its manifest are fetched from a pinned
HuggingFace revision and validated with a warmup inference. Any failure on
that path falls through to a generic ImageNet classifier. Only a failure of
the fallback tier is fatal.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from nutriscan.errors import ManifestError, ModelUnavailableError, ShapeMismatchError
from nutriscan.ml.image_classifier import ModelTier, OnnxFallbackClassifier, OnnxFoodClassifier
from nutriscan.ml.manifest import EMPTY_MANIFEST, Manifest, load_manifest, parse_manifest
from nutriscan.ml.ranking import check_shape

if TYPE_CHECKING:
    from nutriscan.config import Settings
    from nutriscan.ml.image_classifier import ModelProvider

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def load_model(self) -> LoadedModel:
        """Load the best available classifier."""
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


@dataclass(frozen=True)
class ModelSpec:
    """Where to find one tier's ONNX model and its label file."""

    name: str
    repo_id: str
    revision: str
    filename: str
    labels_filename: str
    tier: ModelTier
    license: str


def build_model_registry(settings: Settings) -> dict[ModelTier, ModelSpec]:
    """Return the custom and fallback model specs for the given settings."""
    return {
        ModelTier.CUSTOM: ModelSpec(
            name="food101_mobilenetv2",
            repo_id=settings.custom_model_repo,
            revision=settings.custom_model_revision,
            filename=settings.custom_model_filename,
            labels_filename=settings.manifest_filename,
            tier=ModelTier.CUSTOM,
            license="Apache-2.0",
        ),
        ModelTier.FALLBACK: ModelSpec(
            name="mobilenet_v2_imagenet",
            repo_id=settings.fallback_model_repo,
            revision=settings.fallback_model_revision,
            filename=settings.fallback_model_filename,
            labels_filename=settings.fallback_labels_filename,
            tier=ModelTier.FALLBACK,
            license="Apache-2.0",
        ),
    }


@dataclass(frozen=True)
class LoadedModel:
    """A ready classifier with the vocabulary and nutrition table it uses."""

    provider: ModelProvider
    manifest: Manifest
    tier: ModelTier

    @property
    def is_custom(self) -> bool:
        return self.tier is ModelTier.CUSTOM


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads ONNX models and picks the custom or fallback tier."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._registry = build_model_registry(settings)
        self._sessions: dict[str, InferenceSession] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def registry(self) -> dict[ModelTier, ModelSpec]:
        return self._registry

    def ensure_downloaded(self, spec: ModelSpec, filename: str) -> Path:
        """Download one file of a model repository at its pinned revision."""
        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=filename,
                revision=spec.revision,
                local_dir=str(self._models_dir / spec.name),
                force_download=self._settings.force_download,
            )
        )
        logger.info("Downloaded %s@%s/%s to %s", spec.repo_id, spec.revision, filename, downloaded)
        return downloaded

    def get_session(self, spec: ModelSpec) -> InferenceSession:
        """Return the InferenceSession for a model, creating it on first use."""
        session = self._sessions.get(spec.name)
        if session is not None:
            return session

        model_path = self.ensure_downloaded(spec, spec.filename)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        self._sessions[spec.name] = session
        logger.info("Loaded session for %s", spec.name)
        return session

    def load_manifest(self) -> Manifest:
        """Fetch and parse the custom tier's class/nutrition manifest."""
        spec = self._registry[ModelTier.CUSTOM]
        return load_manifest(self.ensure_downloaded(spec, spec.labels_filename))

    def load_custom(self, manifest: Manifest) -> LoadedModel:
        """Load the custom classifier and validate it against the manifest.

        Raises:
            ShapeMismatchError: If the warmup output length differs from the
                manifest's class count.
        """
        spec = self._registry[ModelTier.CUSTOM]
        provider = OnnxFoodClassifier(self.get_session(spec), spec.name)
        output = self._warmup(provider)
        check_shape(output, manifest.classes)
        return LoadedModel(provider=provider, manifest=manifest, tier=ModelTier.CUSTOM)

    def load_fallback(self, nutrition: Manifest = EMPTY_MANIFEST) -> LoadedModel:
        """Load the generic classifier with its own vocabulary.

        The nutrition table of ``nutrition`` is kept so that generic labels
        which happen to name a dish can still be looked up.
        """
        spec = self._registry[ModelTier.FALLBACK]
        labels_path = self.ensure_downloaded(spec, spec.labels_filename)
        try:
            labels = parse_manifest(json.loads(labels_path.read_text(encoding="utf-8"))).classes
        except json.JSONDecodeError as exc:
            raise ManifestError(f"Could not parse fallback labels {labels_path}: {exc}") from exc

        provider = OnnxFallbackClassifier(self.get_session(spec), spec.name)
        output = self._warmup(provider)
        try:
            check_shape(output, labels)
        except ShapeMismatchError as exc:
            logger.warning("Fallback vocabulary mismatch: %s", exc)
        return LoadedModel(provider=provider, manifest=nutrition.with_classes(labels), tier=ModelTier.FALLBACK)

    def load_model(self) -> LoadedModel:
        """Load the custom tier, falling back to the generic classifier on any failure.

        Raises:
            ModelUnavailableError: If the fallback tier cannot be loaded either.
        """
        manifest = EMPTY_MANIFEST
        try:
            manifest = self.load_manifest()
            loaded = self.load_custom(manifest)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Custom model unavailable, falling back to generic classifier: %s", exc)
            self._sessions.pop(self._registry[ModelTier.CUSTOM].name, None)
        else:
            logger.info("Custom model active (%d classes)", len(manifest.classes))
            return loaded

        try:
            loaded = self.load_fallback(manifest)
        except Exception as exc:
            raise ModelUnavailableError(f"Fallback model could not be loaded: {exc}") from exc

        logger.warning(
            "Fallback model active (%d generic classes); calorie figures are estimates",
            len(loaded.manifest.classes),
        )
        return loaded

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        self._sessions.clear()
        logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _warmup(self, provider: ModelProvider) -> list[float]:
        size = self._settings.input_size
        tensor = np.zeros((1, size, size, 3), dtype=np.float32)
        output = provider.predict(tensor)
        return [float(p) for p in np.asarray(output).reshape(-1)]

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                ("CUDAExecutionProvider", {"device_id": 0, "arena_extend_strategy": "kSameAsRequested"}),
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

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
