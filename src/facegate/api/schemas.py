"""Pydantic request/response schemas for the FaceGate API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class LandmarkPoint(BaseModel):
    """A facial landmark in image pixel coordinates."""

    x: float
    y: float


class DetectedFace(BaseModel):
    """A single detected face with bounding box, score, and landmarks."""

    x: float = Field(description="Bounding box left edge in pixels")
    y: float = Field(description="Bounding box top edge in pixels")
    width: float = Field(description="Bounding box width in pixels")
    height: float = Field(description="Bounding box height in pixels")
    confidence: float = Field(ge=0.0, le=1.0, description="Detection confidence (0.0-1.0)")
    landmarks: dict[str, LandmarkPoint] = Field(
        default_factory=dict,
        description="Named landmarks (left_eye, right_eye, nose, mouth_left, mouth_right) when available",
    )


class DetectionResponse(BaseModel):
    """Response for the face detection endpoint."""

    faces: list[DetectedFace]
    detector: str = Field(description="Detector that produced the faces")
    fallback_used: bool
    image_width: int
    image_height: int


class EmbeddingResponse(BaseModel):
    """Response for the embedding endpoint."""

    vector: list[float] = Field(description="Unit-length face embedding")
    dimension: int
    source: str = Field(description="'network' or 'mock'; mock vectors are not identity features")
    model: str
    strategy: str
    face: DetectedFace
    spoof_score: float | None = None


class VerificationResponse(BaseModel):
    """Response for the face verification endpoint."""

    similarity: float
    distance: float | None = Field(description="Euclidean distance; null when embedding lengths differ")
    match: bool
    confidence: float = Field(ge=0.0, le=1.0)
    threshold: float
    mode: str = Field(description="Strategy that produced the embeddings")
    scale: str = Field(description="'cosine' ([-1, 1]) or 'unit_interval' ([0, 1])")
    mock: bool = Field(description="True when either embedding is a mock")
    valid: bool
    spoof_suspected: bool | None = None
    status: str = Field(description="Pipeline status when the comparison ran")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    pipeline_status: str
    strategy: str
    active_strategy: str
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    completed_requests: int
    rejected_requests: int = Field(description="Requests turned away because no worker freed up in time")


class ModelInfo(BaseModel):
    """Information about a registered model."""

    name: str
    task: str = Field(description="Pipeline stage served by the model")
    required: bool
    status: str = Field(description="Model status: 'loaded', 'failed', or 'not_loaded'")
    error: str | None = None


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
