"""Exception taxonomy for the face pipeline."""

from __future__ import annotations


class FaceGateError(Exception):
    """Base class for all pipeline errors."""


class DecodeFailure(FaceGateError):
    """Raised when image bytes cannot be decoded into a raster."""


class ImageTooLarge(DecodeFailure):
    """Raised when a decoded image exceeds the configured pixel limit."""


class NoFaceDetected(FaceGateError):
    """Raised when every detection strategy returned an empty result."""


class ModelLoadFailure(FaceGateError):
    """Raised when a model file cannot be resolved or loaded."""

    def __init__(self, model_name: str, reason: str) -> None:
        super().__init__(f"Failed to load model '{model_name}': {reason}")
        self.model_name = model_name
        self.reason = reason


class InferenceError(FaceGateError):
    """Raised on a shape mismatch or runtime failure during a forward pass."""


class DimensionMismatch(FaceGateError):
    """Raised when two embeddings of unequal length are compared."""

    def __init__(self, left: int, right: int) -> None:
        super().__init__(f"Embedding length mismatch: {left} != {right}")
        self.left = left
        self.right = right


class DegenerateEmbedding(FaceGateError):
    """Raised when an embedding has a zero or non-finite norm."""


class ModelsNotReady(FaceGateError):
    """Raised when a caller waits for models that did not load."""
