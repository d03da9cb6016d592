"""Image classification model providers backed by ONNX Runtime.

Two providers exist:

- ``OnnxFoodClassifier``: the fine-tuned Food-101 network. Takes a
  MobileNet-normalized NHWC tensor and returns a softmax vector.
- ``OnnxFallbackClassifier``: a generic ImageNet network. Takes raw [0, 255]
  pixels, applies ImageNet mean/std normalization and NCHW layout itself,
  and converts its logits to probabilities.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


class ModelTier(StrEnum):
    CUSTOM = "custom"
    FALLBACK = "fallback"


class ModelProvider(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def expects_normalized_input(self) -> bool:
        """Whether the caller must scale pixels to [-1, 1] before predict()."""
        ...

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Classify a batch of one image.

        Args:
            tensor: float32 array of shape (1, H, W, 3).

        Returns:
            Probability vector, shape (1, num_classes).
        """
        ...


def softmax(logits: NDArray[np.floating]) -> NDArray[np.float32]:
    """Numerically stable softmax over the last axis."""
    shifted = logits - np.max(logits, axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return (exp / np.sum(exp, axis=-1, keepdims=True)).astype(np.float32)


class OnnxFoodClassifier:
    """Custom dish classifier; output order matches the manifest's class list."""

    def __init__(self, session: InferenceSession, model_name: str) -> None:
        self._session = session
        self._model_name = model_name
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def expects_normalized_input(self) -> bool:
        return True

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        outputs = self._session.run(None, {self._input_name: tensor.astype(np.float32, copy=False)})
        return np.asarray(outputs[0], dtype=np.float32)


class OnnxFallbackClassifier:
    """Generic ImageNet classifier with its own normalization."""

    def __init__(self, session: InferenceSession, model_name: str, *, channels_first: bool = True) -> None:
        self._session = session
        self._model_name = model_name
        self._input_name = session.get_inputs()[0].name
        self._channels_first = channels_first

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def expects_normalized_input(self) -> bool:
        return False

    def _normalize(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        scaled = (tensor.astype(np.float32) / 255.0 - IMAGENET_MEAN) / IMAGENET_STD
        if self._channels_first:
            scaled = np.transpose(scaled, (0, 3, 1, 2))
        return np.ascontiguousarray(scaled, dtype=np.float32)

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        outputs = self._session.run(None, {self._input_name: self._normalize(tensor)})
        return softmax(np.asarray(outputs[0], dtype=np.float32))
