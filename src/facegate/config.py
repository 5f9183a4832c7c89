"""Environment-based configuration for FaceGate."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FACEGATE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACEGATE_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency (requests wait up to queue_timeout seconds for a worker)
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Model assets (model_repo None = local files only)
    models_dir: str = "models"
    model_repo: str | None = None
    pnet_file: str = "pnet.onnx"
    rnet_file: str = "rnet.onnx"
    onet_file: str = "onet.onnx"
    embedding_file: str = "mobilefacenet.onnx"
    anti_spoofing_file: str = "anti_spoofing.onnx"
    wait_for_models: bool = False

    # Pipeline strategy
    strategy: Literal["cascade", "heuristic", "mock"] = "cascade"
    cascade_only: bool = False
    heuristic_mode: Literal["simple", "advanced"] = "advanced"

    # Cascade detector
    min_face_size: float = Field(default=20.0, gt=0)
    scale_factor: float = Field(default=0.709, gt=0, lt=1)
    pnet_threshold: float = Field(default=0.6, ge=0, le=1)
    rnet_threshold: float = Field(default=0.7, ge=0, le=1)
    rnet_fallback_threshold: float = Field(default=0.3, ge=0, le=1)
    rnet_fallback_top_k: int = Field(default=20, ge=1)
    onet_threshold: float = Field(default=0.7, ge=0, le=1)
    pnet_nms: float = Field(default=0.5, gt=0, le=1)
    rnet_nms: float = Field(default=0.7, gt=0, le=1)
    onet_nms: float = Field(default=0.7, gt=0, le=1)

    # Heuristic detector
    heuristic_threshold: float = Field(default=0.5, ge=0, le=1)
    heuristic_nms: float = Field(default=0.3, gt=0, le=1)
    heuristic_min_window: int = Field(default=40, ge=12)
    heuristic_max_side: int = Field(default=320, ge=48)

    # Embedding
    embedding_dim: int | None = Field(default=None, ge=3)
    embedding_input_size: int = Field(default=112, ge=16)
    face_padding: float = Field(default=0.2, ge=0, le=0.5)
    mock_embedding_dim: int = Field(default=128, ge=3)

    # Anti-spoofing
    spoof_threshold: float = Field(default=0.2, ge=0)

    # Verification (threshold None = default of the similarity scale)
    similarity_scale: Literal["cosine", "unit_interval"] = "unit_interval"
    similarity_threshold: float | None = Field(default=None, ge=-1, le=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
