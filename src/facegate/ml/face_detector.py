"""Face detection types and the cascade-to-heuristic fallback chain.

Implementations: MTCNN cascade (``facegate.ml.cascade``), heuristic
skin/Haar detector (``facegate.ml.heuristic``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from facegate.ml.errors import InferenceError
from facegate.ml.geometry import Point, Rect

if TYPE_CHECKING:
    from collections.abc import Sequence

    from facegate.ml.preprocessing import ImageBuffer

logger = logging.getLogger(__name__)

LANDMARK_NAMES: tuple[str, ...] = ("left_eye", "right_eye", "nose", "mouth_left", "mouth_right")


@dataclass
class FaceBox:
    """A detected face in original image coordinates.

    Geometry is refined in place while the cascade runs; downstream stages
    treat the box as read-only.
    """

    x: float
    y: float
    width: float
    height: float
    confidence: float
    landmarks: dict[str, Point] = field(default_factory=dict)

    @property
    def area(self) -> float:
        return self.width * self.height

    def to_rect(self) -> Rect:
        return Rect(self.x, self.y, self.width, self.height)

    def copy(self) -> FaceBox:
        return FaceBox(self.x, self.y, self.width, self.height, self.confidence, dict(self.landmarks))

    def apply_regression(self, deltas: Sequence[float]) -> None:
        """Shift each edge by its delta scaled by the box dimension.

        ``deltas`` is ``(dx1, dy1, dx2, dy2)``.
        """
        dx1, dy1, dx2, dy2 = (float(d) for d in deltas[:4])
        x1 = self.x + dx1 * self.width
        y1 = self.y + dy1 * self.height
        x2 = self.x + self.width + dx2 * self.width
        y2 = self.y + self.height + dy2 * self.height
        self.x, self.y = x1, y1
        self.width, self.height = x2 - x1, y2 - y1

    @property
    def is_valid(self) -> bool:
        return self.width > 0 and self.height > 0


def largest_face(boxes: Sequence[FaceBox]) -> FaceBox | None:
    """Return the box with the largest area, or None for no boxes."""
    if not boxes:
        return None
    return max(boxes, key=lambda b: b.area)


class FaceDetector(Protocol):
    """Protocol for face detection strategies."""

    @property
    def name(self) -> str:
        """Return the strategy identifier string."""
        ...

    def detect(self, image: ImageBuffer) -> list[FaceBox]:
        """Detect faces in an image.

        Args:
            image: Decoded RGB image.

        Returns:
            Detected faces, highest confidence first. Empty when none found.
        """
        ...


@dataclass(frozen=True)
class DetectionResult:
    """Faces found by a detection chain and the detector that found them."""

    faces: list[FaceBox]
    detector: str
    fallback_used: bool


class DetectionChain:
    """Runs detectors in order until one finds a face.

    Inference errors from any detector but the last are recovered the same
    way as an empty result. With ``cascade_only`` only the primary runs and
    its errors propagate.
    """

    def __init__(self, primary: FaceDetector, *fallbacks: FaceDetector) -> None:
        self._primary = primary
        self._fallbacks = fallbacks

    @property
    def primary(self) -> FaceDetector:
        return self._primary

    @property
    def fallbacks(self) -> tuple[FaceDetector, ...]:
        return self._fallbacks

    def detect(self, image: ImageBuffer, *, cascade_only: bool = False) -> DetectionResult:
        if cascade_only or not self._fallbacks:
            faces = [f for f in self._primary.detect(image) if f.is_valid]
            return DetectionResult(faces=faces, detector=self._primary.name, fallback_used=False)

        detectors = (self._primary, *self._fallbacks)
        last = detectors[-1]
        for current, following in zip(detectors, detectors[1:], strict=False):
            try:
                faces = [f for f in current.detect(image) if f.is_valid]
            except InferenceError:
                logger.warning("Detector %s failed, using %s", current.name, following.name, exc_info=True)
                continue
            if faces:
                return DetectionResult(faces=faces, detector=current.name, fallback_used=current is not self._primary)
            logger.info("Detector %s found no faces, using %s", current.name, following.name)

        faces = [f for f in last.detect(image) if f.is_valid]
        return DetectionResult(faces=faces, detector=last.name, fallback_used=True)
