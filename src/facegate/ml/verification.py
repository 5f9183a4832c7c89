"""Embedding comparison and match decision."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from facegate.ml.errors import DimensionMismatch

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class SimilarityScale(StrEnum):
    """How the raw cosine is reported and thresholded.

    ``COSINE`` keeps the dot product in [-1, 1]; ``UNIT_INTERVAL`` remaps it
    to [0, 1] with ``(dot + 1) / 2``.
    """

    COSINE = "cosine"
    UNIT_INTERVAL = "unit_interval"

    @property
    def default_threshold(self) -> float:
        return 0.5 if self is SimilarityScale.COSINE else 0.75


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of comparing two embeddings."""

    similarity: float
    distance: float
    match: bool
    confidence: float
    threshold: float
    mode: str
    scale: SimilarityScale
    mock: bool = False
    valid: bool = True
    spoof_suspected: bool | None = None


class VerificationEngine:
    """Cosine similarity, Euclidean distance and thresholded match decisions."""

    def __init__(self, scale: SimilarityScale = SimilarityScale.UNIT_INTERVAL, threshold: float | None = None) -> None:
        self._scale = scale
        self._threshold = scale.default_threshold if threshold is None else threshold

    @property
    def scale(self) -> SimilarityScale:
        return self._scale

    @property
    def threshold(self) -> float:
        return self._threshold

    def similarity(self, a: NDArray[np.floating], b: NDArray[np.floating]) -> float:
        """Cosine similarity of two unit vectors on the configured scale.

        Raises:
            DimensionMismatch: If the vectors differ in length.
        """
        a = np.asarray(a, dtype=np.float64).ravel()
        b = np.asarray(b, dtype=np.float64).ravel()
        if a.shape != b.shape:
            raise DimensionMismatch(a.shape[0], b.shape[0])
        dot = float(np.clip(np.dot(a, b), -1.0, 1.0))
        if self._scale is SimilarityScale.UNIT_INTERVAL:
            return (dot + 1.0) / 2.0
        return dot

    @staticmethod
    def distance(a: NDArray[np.floating], b: NDArray[np.floating]) -> float:
        """Euclidean distance, or ``math.inf`` when lengths differ."""
        a = np.asarray(a, dtype=np.float64).ravel()
        b = np.asarray(b, dtype=np.float64).ravel()
        if a.shape != b.shape:
            return math.inf
        return float(np.linalg.norm(a - b))

    @staticmethod
    def confidence(similarity: float, threshold: float, match: bool) -> float:
        """Map similarity to [0, 1] around the threshold.

        Matches scale from 0.5 at the threshold to 1.0 at similarity 1;
        non-matches scale from 0.0 at similarity 0 up to 0.5 at the threshold.
        """
        if match:
            if threshold >= 1.0:
                return 1.0
            return min(1.0, 0.5 + 0.5 * (similarity - threshold) / (1.0 - threshold))
        if threshold <= 0.0:
            return 0.0
        return min(0.5, max(0.0, 0.5 * similarity / threshold))

    def verify(
        self,
        a: NDArray[np.floating],
        b: NDArray[np.floating],
        threshold: float | None = None,
        mode: str = "embedding",
        mock: bool = False,
    ) -> VerificationResult:
        """Compare two embeddings.

        A length mismatch yields an invalid result (``valid=False``, infinite
        distance) instead of raising.
        """
        threshold = self._threshold if threshold is None else threshold
        try:
            similarity = self.similarity(a, b)
        except DimensionMismatch as exc:
            logger.warning("%s", exc)
            return VerificationResult(
                similarity=0.0,
                distance=math.inf,
                match=False,
                confidence=0.0,
                threshold=threshold,
                mode=mode,
                scale=self._scale,
                mock=mock,
                valid=False,
            )

        distance = self.distance(a, b)
        match = similarity > threshold
        confidence = self.confidence(similarity, threshold, match)
        logger.debug(
            "Verification (%s): similarity=%.4f distance=%.4f threshold=%.2f match=%s",
            mode,
            similarity,
            distance,
            threshold,
            match,
        )
        return VerificationResult(
            similarity=similarity,
            distance=distance,
            match=match,
            confidence=confidence,
            threshold=threshold,
            mode=mode,
            scale=self._scale,
            mock=mock,
        )
