"""Result composition: join a prediction with nutrition data.

Macro estimates use fixed dietary ratios of a serving's energy (15% protein,
50% carbohydrate, 35% fat) and the 4/4/9 kcal-per-gram conversion.
"""

from __future__ import annotations

import zlib
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from nutriscan.ml.image_classifier import ModelTier

if TYPE_CHECKING:
    from nutriscan.ml.manifest import Manifest
    from nutriscan.ml.ranking import RankedPrediction

PROTEIN_RATIO: float = 0.15
CARBS_RATIO: float = 0.50
FAT_RATIO: float = 0.35

KCAL_PER_GRAM_PROTEIN: float = 4.0
KCAL_PER_GRAM_CARBS: float = 4.0
KCAL_PER_GRAM_FAT: float = 9.0

DEFAULT_ESTIMATE_RANGE: tuple[int, int] = (200, 600)


class NutritionSource(StrEnum):
    EXACT = "exact"
    DERIVED = "derived"
    ESTIMATED = "estimated"


@dataclass(frozen=True)
class Macros:
    protein_g: float
    carbs_g: float
    fat_g: float


@dataclass(frozen=True)
class DisplayResult:
    """Prediction and nutrition values ready for presentation."""

    label: str
    display_name: str
    confidence_percent: float
    calories: int
    protein_g: float
    carbs_g: float
    fat_g: float
    source: NutritionSource


def format_label(label: str) -> str:
    """Turn a class label into display text: ``french_fries`` -> ``French Fries``."""
    words = label.replace("_", " ").split(" ")
    return " ".join(word[:1].upper() + word[1:] for word in words)


def clean_label(label: str) -> str:
    """Keep only the leading synonym of a multi-synonym label.

    ImageNet-style vocabularies list synonyms: ``"pizza, pizza pie"`` -> ``"pizza"``.
    """
    return label.split(",", 1)[0].strip()


def derive_macros(calories: float) -> Macros:
    """Estimate macro grams from a calorie figure using the fixed ratios."""
    return Macros(
        protein_g=calories * PROTEIN_RATIO / KCAL_PER_GRAM_PROTEIN,
        carbs_g=calories * CARBS_RATIO / KCAL_PER_GRAM_CARBS,
        fat_g=calories * FAT_RATIO / KCAL_PER_GRAM_FAT,
    )


def placeholder_calories(label: str, bounds: tuple[int, int] = DEFAULT_ESTIMATE_RANGE) -> int:
    """Plausible calorie figure in ``[low, high)`` for a label with no data.

    Deterministic per label so the same dish always gets the same estimate.
    """
    low, high = bounds
    if high <= low:
        return low
    return low + zlib.crc32(label.encode("utf-8")) % (high - low)


def confidence_percent(probability: float) -> float:
    return round(probability * 100.0, 1)


def compose_result(
    prediction: RankedPrediction,
    registry: Manifest,
    tier: ModelTier = ModelTier.CUSTOM,
    estimate_bounds: tuple[int, int] = DEFAULT_ESTIMATE_RANGE,
) -> DisplayResult:
    """Attach nutrition values to a prediction.

    Fallback-tier labels are cleaned before lookup. Registry figures are
    used verbatim; macros an entry lacks are ratio-derived from its
    calories; unknown labels get a placeholder calorie value and derived
    macros.
    """
    label = clean_label(prediction.label) if tier is ModelTier.FALLBACK else prediction.label
    entry = registry.lookup(label)

    if entry is not None and entry.has_macros:
        calories = entry.calories
        macros = Macros(protein_g=entry.protein_g, carbs_g=entry.carbs_g, fat_g=entry.fat_g)  # type: ignore[arg-type]
        source = NutritionSource.EXACT
    elif entry is not None:
        calories = entry.calories
        derived = derive_macros(calories)
        macros = Macros(
            protein_g=derived.protein_g if entry.protein_g is None else entry.protein_g,
            carbs_g=derived.carbs_g if entry.carbs_g is None else entry.carbs_g,
            fat_g=derived.fat_g if entry.fat_g is None else entry.fat_g,
        )
        source = NutritionSource.DERIVED
    else:
        calories = placeholder_calories(label, estimate_bounds)
        macros = derive_macros(calories)
        source = NutritionSource.ESTIMATED

    return DisplayResult(
        label=label,
        display_name=format_label(label),
        confidence_percent=confidence_percent(prediction.probability),
        calories=round(calories),
        protein_g=round(macros.protein_g, 1),
        carbs_g=round(macros.carbs_g, 1),
        fat_g=round(macros.fat_g, 1),
        source=source,
    )
