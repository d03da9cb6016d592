"""Exception types raised by the classification pipeline."""

from __future__ import annotations


class NutriScanError(Exception):
    """Base class for all NutriScan errors."""


class PreprocessingError(NutriScanError):
    """The uploaded image is empty, undecodable, or has no pixels."""


class ManifestError(NutriScanError):
    """The class/nutrition manifest is missing fields or is not valid JSON."""


class ShapeMismatchError(NutriScanError):
    """The model output length does not match the class index length."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Model returned {actual} scores but the class index has {expected} labels")
        self.expected = expected
        self.actual = actual


class InferenceError(NutriScanError):
    """The model provider failed while running a prediction."""


class ModelUnavailableError(NutriScanError):
    """Neither the custom nor the fallback model could be loaded."""
