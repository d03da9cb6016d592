"""Pydantic request/response schemas for the NutriScan API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class RankedLabel(BaseModel):
    """One of the top-k guesses."""

    label: str
    display_name: str
    confidence: float = Field(ge=0.0, le=100.0, description="Confidence percentage (0-100, one decimal)")


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    label: str
    display_name: str
    confidence: float = Field(ge=0.0, le=100.0, description="Confidence percentage (0-100, one decimal)")
    calories: int
    protein_g: float
    carbs_g: float
    fat_g: float
    nutrition_source: str = Field(description="'exact', 'derived' (ratio macros), or 'estimated' (placeholder)")
    tier: str = Field(description="Active model tier: 'custom' or 'fallback'")
    is_custom_model: bool
    labels_degraded: bool = Field(description="True when the model output did not match the class list")
    top_k: list[RankedLabel]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="'ok' when a model is loaded, 'offline' otherwise")
    tier: str | None
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about one model tier."""

    name: str
    tier: str
    repo_id: str
    revision: str
    status: str = Field(description="Model status: 'active', 'available', or 'unavailable'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
