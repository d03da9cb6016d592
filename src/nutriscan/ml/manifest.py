"""Class index and nutrition registry loaded from the model manifest.

Manifest format (``classes.json``)::

    {
        "classes": ["apple_pie", "baby_back_ribs", ...],
        "calories": {"apple_pie": 320, ...},
        "nutrition": {"apple_pie": {"calories": 320, "protein": 3, "carbs": 46, "fat": 14}, ...}
    }

``nutrition`` is optional. A bare JSON array of labels is accepted as a
manifest with no nutrition data.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from nutriscan.errors import ManifestError

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

logger = logging.getLogger(__name__)

ClassIndex = tuple[str, ...]


@dataclass(frozen=True)
class NutritionEntry:
    """Calories and optional macro grams for a typical serving."""

    calories: float
    protein_g: float | None = None
    carbs_g: float | None = None
    fat_g: float | None = None

    @property
    def has_macros(self) -> bool:
        return self.protein_g is not None and self.carbs_g is not None and self.fat_g is not None


def normalize_key(label: str) -> str:
    """Canonical registry key: lowercase, spaces replaced with underscores."""
    return "_".join(label.strip().lower().split())


@dataclass(frozen=True)
class Manifest:
    """Immutable label vocabulary plus label -> nutrition lookup table."""

    classes: ClassIndex
    entries: Mapping[str, NutritionEntry] = field(default_factory=lambda: MappingProxyType({}))

    def lookup(self, label: str) -> NutritionEntry | None:
        """Return the nutrition entry for ``label``, or None when unknown.

        Tries the exact label first, then its normalized form, so
        ``"Hot Dog"`` resolves to a ``hot_dog`` entry.
        """
        entry = self.entries.get(label)
        if entry is not None:
            return entry
        return self.entries.get(normalize_key(label))

    def with_classes(self, classes: ClassIndex) -> Manifest:
        """Return a copy that keeps this nutrition table but uses another vocabulary."""
        return Manifest(classes=tuple(classes), entries=self.entries)


EMPTY_MANIFEST = Manifest(classes=())


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _number(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ManifestError(f"{what} must be a number, got {value!r}")
    return float(value)


def _optional_number(value: Any, what: str) -> float | None:
    if value is None:
        return None
    return _number(value, what)


def parse_manifest(data: Any) -> Manifest:
    """Build a Manifest from decoded JSON.

    Raises:
        ManifestError: If the class list is missing or empty, or any
            non-null calorie/macro value is not numeric. Labels whose
            calories are null get no entry.
    """
    if isinstance(data, list):
        raw_classes: Any = data
        calories: Any = {}
        nutrition: Any = {}
    elif isinstance(data, dict):
        raw_classes = data.get("classes")
        calories = data.get("calories") or {}
        nutrition = data.get("nutrition") or {}
    else:
        raise ManifestError("Manifest must be a JSON object or a list of labels")

    if not isinstance(raw_classes, list) or not raw_classes:
        raise ManifestError("Manifest has no class list")
    if not all(isinstance(label, str) for label in raw_classes):
        raise ManifestError("Manifest class labels must be strings")
    if not isinstance(calories, dict) or not isinstance(nutrition, dict):
        raise ManifestError("Manifest 'calories' and 'nutrition' must be objects")

    # A null calorie figure means "unknown": the label gets no entry.
    entries: dict[str, NutritionEntry] = {}
    for label, kcal in calories.items():
        if kcal is None:
            continue
        entries[label] = NutritionEntry(calories=_number(kcal, f"calories[{label!r}]"))

    # Full nutrition records take precedence over bare calorie figures.
    for label, record in nutrition.items():
        if not isinstance(record, dict):
            raise ManifestError(f"nutrition[{label!r}] must be an object")
        kcal = record.get("calories", calories.get(label))
        if kcal is None:
            continue
        entries[label] = NutritionEntry(
            calories=_number(kcal, f"nutrition[{label!r}].calories"),
            protein_g=_optional_number(record.get("protein"), f"nutrition[{label!r}].protein"),
            carbs_g=_optional_number(record.get("carbs"), f"nutrition[{label!r}].carbs"),
            fat_g=_optional_number(record.get("fat"), f"nutrition[{label!r}].fat"),
        )

    for label in list(entries):
        entries.setdefault(normalize_key(label), entries[label])

    return Manifest(classes=tuple(raw_classes), entries=MappingProxyType(entries))


def load_manifest(path: Path) -> Manifest:
    """Read and parse a manifest file.

    Raises:
        ManifestError: If the file cannot be read or is not a valid manifest.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ManifestError(f"Could not read manifest {path}: {exc}") from exc

    manifest = parse_manifest(data)
    logger.info(
        "Manifest loaded from %s: %d classes, %d nutrition entries",
        path,
        len(manifest.classes),
        len(manifest.entries),
    )
    return manifest
