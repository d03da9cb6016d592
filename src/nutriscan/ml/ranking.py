"""Inference and ranking engine.

Runs a model provider on a preprocessed tensor and turns the probability
vector into ranked (label, probability) predictions. The engine keeps no
state between calls: everything it needs is passed in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from nutriscan.errors import InferenceError, NutriScanError, ShapeMismatchError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from nutriscan.ml.image_classifier import ModelProvider
    from nutriscan.ml.manifest import ClassIndex

logger = logging.getLogger(__name__)

DEFAULT_TOP_K: int = 3


@dataclass(frozen=True)
class RankedPrediction:
    """A single label with its model probability."""

    index: int
    label: str
    probability: float


@dataclass(frozen=True)
class Ranking:
    """Top-1 and top-k predictions for one inference call."""

    top: RankedPrediction
    top_k: tuple[RankedPrediction, ...]
    labels_degraded: bool = False


def check_shape(probabilities: Sequence[float], class_index: ClassIndex) -> None:
    """Raise ShapeMismatchError if the vector and class index disagree in length."""
    if len(probabilities) != len(class_index):
        raise ShapeMismatchError(expected=len(class_index), actual=len(probabilities))


def top1(probabilities: Sequence[float]) -> tuple[int, float]:
    """Return (index, probability) of the maximum; the lowest index wins ties."""
    if not probabilities:
        raise ValueError("Cannot rank an empty probability vector")

    best_index = 0
    best_prob = probabilities[0]
    for i in range(1, len(probabilities)):
        if probabilities[i] > best_prob:
            best_prob = probabilities[i]
            best_index = i
    return best_index, best_prob


def top_k(probabilities: Sequence[float], k: int = DEFAULT_TOP_K) -> list[tuple[int, float]]:
    """Return up to ``k`` (index, probability) pairs, highest first.

    Uses a stable sort so equal probabilities keep their original index
    order. Vectors shorter than ``k`` yield all of their entries.
    """
    ranked = sorted(enumerate(probabilities), key=lambda pair: pair[1], reverse=True)
    return ranked[:k]


def resolve_label(class_index: ClassIndex, index: int, vector_length: int) -> str:
    """Map an output index to its label.

    Indices past the end of the class index (a stale or mismatched manifest)
    get a synthesized ``Class {index}`` name.

    Raises:
        IndexError: If ``index`` is outside the probability vector.
    """
    if index < 0 or index >= vector_length:
        raise IndexError(f"Output index {index} out of range for vector of length {vector_length}")
    if index < len(class_index):
        return class_index[index]
    return f"Class {index}"


def rank(probabilities: Sequence[float], class_index: ClassIndex, k: int = DEFAULT_TOP_K) -> Ranking:
    """Rank a probability vector against a class index.

    A length mismatch does not abort: the ranking is built with synthesized
    labels and flagged as degraded.
    """
    degraded = False
    try:
        check_shape(probabilities, class_index)
    except ShapeMismatchError as exc:
        logger.warning("%s; labelling unknown indices as 'Class N'", exc)
        degraded = True

    n = len(probabilities)
    best_index, best_prob = top1(probabilities)
    top = RankedPrediction(
        index=best_index,
        label=resolve_label(class_index, best_index, n),
        probability=float(best_prob),
    )
    ranked = tuple(
        RankedPrediction(index=i, label=resolve_label(class_index, i, n), probability=float(p))
        for i, p in top_k(probabilities, k)
    )
    return Ranking(top=top, top_k=ranked, labels_degraded=degraded)


def _to_vector(output: NDArray[np.floating]) -> list[float]:
    vector = np.asarray(output, dtype=np.float64).reshape(-1)
    return [float(p) for p in vector]


def infer(
    tensor: NDArray[np.float32],
    class_index: ClassIndex,
    provider: ModelProvider,
    k: int = DEFAULT_TOP_K,
) -> Ranking:
    """Run one prediction and rank the result.

    Single attempt, no retries.

    Raises:
        InferenceError: If the provider fails or returns an empty vector.
    """
    try:
        output = provider.predict(tensor)
    except NutriScanError:
        raise
    except Exception as exc:
        raise InferenceError(f"{provider.model_name} prediction failed: {exc}") from exc

    probabilities = _to_vector(output)
    if not probabilities:
        raise InferenceError(f"{provider.model_name} returned an empty output")
    return rank(probabilities, class_index, k)
