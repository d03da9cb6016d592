"""Environment-based configuration for NutriScan."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from NUTRISCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NUTRISCAN_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Model artifacts
    models_dir: str = "models"
    force_download: bool = True

    # Custom tier: fine-tuned Food-101 network plus its manifest
    custom_model_repo: str = "nutriscan/food101-mobilenetv2"
    custom_model_revision: str = "v1"
    custom_model_filename: str = "model.onnx"
    manifest_filename: str = "classes.json"

    # Fallback tier: generic ImageNet network with its own vocabulary
    fallback_model_repo: str = "nutriscan/nutriscan-models"
    fallback_model_revision: str = "main"
    fallback_model_filename: str = "mobilenet_v2_imagenet.onnx"
    fallback_labels_filename: str = "imagenet_labels.json"

    # Classification
    input_size: int = Field(default=224, ge=1)
    top_k: int = Field(default=3, ge=1)
    estimate_min_calories: int = Field(default=200, ge=0)
    estimate_max_calories: int = Field(default=600, ge=1)

    @model_validator(mode="after")
    def check_estimate_range(self) -> Settings:
        if self.estimate_min_calories >= self.estimate_max_calories:
            msg = (
                f"estimate_min_calories ({self.estimate_min_calories}) must be below "
                f"estimate_max_calories ({self.estimate_max_calories})"
            )
            raise ValueError(msg)
        return self


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
