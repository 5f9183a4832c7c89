"""Face embedding extraction.

Implementations: MobileFaceNet-style network via ``InferenceRuntime``
(``NetEmbeddingExtractor``), deterministic content-aware mock for demo and
offline use (``ContentAwareMockEmbedder``).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import numpy as np

from facegate.ml.errors import DegenerateEmbedding, InferenceError
from facegate.ml.preprocessing import crop_with_padding, normalize_pixels, to_tensor

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facegate.ml.face_detector import FaceBox
    from facegate.ml.preprocessing import ImageBuffer
    from facegate.ml.runtime import InferenceRuntime

logger = logging.getLogger(__name__)

DEFAULT_INPUT_SIZE = 112
DEFAULT_PADDING = 0.2
MOCK_SEED = 1729


class EmbeddingSource(StrEnum):
    NETWORK = "network"
    MOCK = "mock"


@dataclass(frozen=True, eq=False)
class Embedding:
    """A unit-length face embedding and where it came from."""

    vector: NDArray[np.float32]
    source: EmbeddingSource
    model: str
    spoof_score: float | None = None

    def __post_init__(self) -> None:
        vector = np.array(self.vector, dtype=np.float32).ravel()
        vector.setflags(write=False)
        object.__setattr__(self, "vector", vector)

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])

    @property
    def is_mock(self) -> bool:
        return self.source == EmbeddingSource.MOCK

    def with_spoof_score(self, score: float | None) -> Embedding:
        return Embedding(self.vector, self.source, self.model, score)


def l2_normalize(vector: NDArray[np.floating]) -> NDArray[np.float32]:
    """Scale a vector to unit L2 norm.

    Raises:
        DegenerateEmbedding: If the norm is zero or not finite.
    """
    values = np.asarray(vector, dtype=np.float64).ravel()
    norm = float(np.linalg.norm(values))
    if norm == 0.0 or not math.isfinite(norm):
        raise DegenerateEmbedding(f"Cannot normalise a vector with norm {norm}")
    return (values / norm).astype(np.float32)


class EmbeddingExtractor(Protocol):
    """Protocol for face embedding strategies."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def embedding_dim(self) -> int:
        """Return the embedding dimensionality (e.g., 128 or 512)."""
        ...

    def prepare(self, image: ImageBuffer, box: FaceBox) -> ImageBuffer:
        """Crop a detected face and resize it to the extractor input size."""
        ...

    def embed(self, face: ImageBuffer) -> Embedding:
        """Compute a unit-norm embedding for a face crop.

        Raises:
            DegenerateEmbedding: If the raw output has zero norm.
            InferenceError: If the forward pass fails.
        """
        ...


class NetEmbeddingExtractor:
    """Embedding network reached through an ``InferenceRuntime``."""

    def __init__(
        self,
        runtime: InferenceRuntime,
        embedding_dim: int | None = None,
        input_size: int = DEFAULT_INPUT_SIZE,
        padding: float = DEFAULT_PADDING,
    ) -> None:
        self._runtime = runtime
        self._padding = padding
        self._input_size = runtime.input_shape.square_size(input_size)

        outputs = runtime.output_shapes
        if not outputs:
            raise InferenceError(f"Embedding model '{runtime.name}' has no outputs")
        reported = outputs[0].dims[-1] if outputs[0].dims else None
        if embedding_dim is not None and reported is not None and reported != embedding_dim:
            raise InferenceError(
                f"Embedding model '{runtime.name}' outputs {reported} dimensions, configured for {embedding_dim}"
            )
        dim = embedding_dim or reported
        if dim is None:
            raise InferenceError(f"Embedding dimension of '{runtime.name}' is dynamic; set it explicitly")
        self._embedding_dim = dim

    @property
    def model_name(self) -> str:
        return self._runtime.name

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim

    @property
    def input_size(self) -> int:
        return self._input_size

    def prepare(self, image: ImageBuffer, box: FaceBox) -> ImageBuffer:
        face = crop_with_padding(image, box.to_rect(), self._padding)
        return face.resize(self._input_size, self._input_size)

    def embed(self, face: ImageBuffer) -> Embedding:
        if face.size != (self._input_size, self._input_size):
            face = face.resize(self._input_size, self._input_size)
        outputs = self._runtime.run(to_tensor([face], self._runtime.input_shape))
        raw = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if raw.shape[0] != self._embedding_dim:
            raise InferenceError(f"Expected {self._embedding_dim} embedding values, got {raw.shape[0]}")
        if not np.all(np.isfinite(raw)):
            raise InferenceError(f"Embedding model '{self.model_name}' produced non-finite values")
        return Embedding(l2_normalize(raw), EmbeddingSource.NETWORK, self.model_name)


class ContentAwareMockEmbedder:
    """Deterministic stand-in for the embedding network.

    The face is average-pooled to a coarse RGB grid, centred to [-1, 1] and
    lifted into ``embedding_dim`` dimensions with a seeded orthonormal basis.
    The lift preserves inner products, so cosine similarity between mock
    embeddings equals that of the pooled content. Output is always tagged
    ``EmbeddingSource.MOCK``.
    """

    def __init__(
        self,
        embedding_dim: int = 128,
        seed: int = MOCK_SEED,
        input_size: int = DEFAULT_INPUT_SIZE,
        padding: float = DEFAULT_PADDING,
    ) -> None:
        if embedding_dim < 3:
            raise ValueError("embedding_dim must be at least 3")
        self._embedding_dim = embedding_dim
        self._input_size = input_size
        self._padding = padding
        self._grid = max(1, math.isqrt(embedding_dim // 3))
        features = self._grid * self._grid * 3
        rng = np.random.default_rng(seed)
        basis, _ = np.linalg.qr(rng.standard_normal((embedding_dim, features)))
        self._basis = basis.astype(np.float64)

    @property
    def model_name(self) -> str:
        return "content_aware_mock"

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim

    def prepare(self, image: ImageBuffer, box: FaceBox) -> ImageBuffer:
        face = crop_with_padding(image, box.to_rect(), self._padding)
        return face.resize(self._input_size, self._input_size)

    def embed(self, face: ImageBuffer) -> Embedding:
        pooled = face.resize(self._grid, self._grid)
        features = normalize_pixels(pooled.pixels).astype(np.float64).ravel()
        return Embedding(l2_normalize(self._basis @ features), EmbeddingSource.MOCK, self.model_name)
