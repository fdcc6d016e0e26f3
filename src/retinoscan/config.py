"""Environment-based configuration for RetinoScan."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from RETINOSCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RETINOSCAN_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Security. When set, every /api/v1 request needs "Authorization: Bearer <key>".
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model file. When model_repo_id is set and the file is missing it is
    # downloaded from the Hugging Face Hub into models_dir at startup.
    model_path: str | None = None
    models_dir: str = "models"
    model_repo_id: str | None = None
    model_filename: str = "retinopathy.onnx"

    # Model contract
    input_size: int = Field(default=224, ge=1)
    num_classes: int = Field(default=5, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=4, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=89_478_485, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)
    fetch_timeout: float = Field(default=15.0, gt=0)

    # Fundus photo sanity checks (opt-in)
    validate_fundus: bool = False
    min_image_side: int = Field(default=300, ge=1)
    min_aspect_ratio: float = Field(default=0.8, gt=0)
    max_aspect_ratio: float = Field(default=1.5, gt=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
