"""Classification pipeline: preprocess -> infer -> compose."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from nutriscan.ml.image_classifier import ModelTier
from nutriscan.ml.nutrition import DEFAULT_ESTIMATE_RANGE, DisplayResult, compose_result
from nutriscan.ml.preprocessing import decode_image, preprocess
from nutriscan.ml.ranking import DEFAULT_TOP_K, RankedPrediction, infer

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from nutriscan.config import Settings
    from nutriscan.ml.image_classifier import ModelProvider
    from nutriscan.ml.manifest import Manifest
    from nutriscan.ml.model_manager import LoadedModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationContext:
    """Everything a classification needs, fixed once the model is loaded."""

    provider: ModelProvider
    manifest: Manifest
    tier: ModelTier
    input_size: tuple[int, int] = (224, 224)
    top_k: int = DEFAULT_TOP_K
    estimate_bounds: tuple[int, int] = DEFAULT_ESTIMATE_RANGE
    max_image_pixels: int | None = None

    @property
    def is_custom_model(self) -> bool:
        return self.tier is ModelTier.CUSTOM

    @classmethod
    def from_loaded(cls, loaded: LoadedModel, settings: Settings) -> ClassificationContext:
        return cls(
            provider=loaded.provider,
            manifest=loaded.manifest,
            tier=loaded.tier,
            input_size=(settings.input_size, settings.input_size),
            top_k=settings.top_k,
            estimate_bounds=(settings.estimate_min_calories, settings.estimate_max_calories),
            max_image_pixels=settings.max_image_pixels,
        )


@dataclass(frozen=True)
class InferenceResult:
    """Outcome of one classification request."""

    top: RankedPrediction
    top_k: tuple[RankedPrediction, ...]
    nutrition: DisplayResult
    tier: ModelTier
    labels_degraded: bool = False

    @property
    def is_custom_model(self) -> bool:
        return self.tier is ModelTier.CUSTOM


def classify_array(image: NDArray[np.uint8], context: ClassificationContext) -> InferenceResult:
    """Classify an already-decoded HxWx3 RGB uint8 image."""
    tensor = preprocess(
        image,
        context.input_size,
        normalize=context.provider.expects_normalized_input,
    )
    try:
        ranking = infer(tensor, context.manifest.classes, context.provider, context.top_k)
    finally:
        del tensor

    nutrition = compose_result(ranking.top, context.manifest, context.tier, context.estimate_bounds)
    logger.info(
        "Classified as %s (%.1f%%, tier=%s, nutrition=%s)",
        nutrition.label,
        nutrition.confidence_percent,
        context.tier,
        nutrition.source,
    )
    return InferenceResult(
        top=ranking.top,
        top_k=ranking.top_k,
        nutrition=nutrition,
        tier=context.tier,
        labels_degraded=ranking.labels_degraded,
    )


def classify(image_bytes: bytes, context: ClassificationContext) -> InferenceResult:
    """Decode an uploaded image and classify it.

    Raises:
        PreprocessingError: If the image cannot be decoded.
        InferenceError: If the model fails during prediction.
    """
    image = decode_image(image_bytes, context.max_image_pixels)
    return classify_array(image, context)
