"""Environment-based configuration for PlantID."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from PLANTID_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PLANTID_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Model selection
    classifier_model: str = "plantnet_mobilenetv3"
    models_dir: str = "models"
    allow_download: bool = True
    preload_model: bool = True

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Classification policy
    input_size: int = Field(default=224, ge=1)
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    top_k: int = Field(default=5, ge=1)

    # Image sources
    camera_enabled: bool = True
    camera_index: int = Field(default=0, ge=0)

    # Plant-care search
    search_domain: str = "www.google.com"
    search_suffix: str = "plant care"
    open_browser: bool = True

    # Display
    initial_label: str = "Tap the camera to start"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
