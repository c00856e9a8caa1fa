"""Environment-based configuration for SafeSight."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from SAFESIGHT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SAFESIGHT_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Model storage and fetching
    models_dir: str = "./models"
    model_url: str | None = None
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)
    warmup: bool = True

    # Classification
    image_size: int = Field(default=256, ge=1)
    top_k: int = Field(default=2, ge=1)
    class_labels: list[str] = Field(default_factory=list)

    # Backend selection
    backend: Literal["local", "remote"] = "local"
    fallback_enabled: bool = True

    # Remote classification service
    remote_url: str | None = None
    remote_api_key: str | None = None
    probe_timeout: float = Field(default=5.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
