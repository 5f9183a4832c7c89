"""Model-free fallback face detector.

Two modes:
    simple   -- assume a portrait framing and return the upper-centre region.
    advanced -- multi-scale sliding window scored from Haar-like features,
                skin-colour ratio and coarse facial-pattern checks, all read
                from integral images.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

import numpy as np

from facegate.ml.face_detector import FaceBox
from facegate.ml.geometry import nms_indices

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facegate.config import Settings
    from facegate.ml.preprocessing import ImageBuffer

logger = logging.getLogger(__name__)

HeuristicMode = Literal["simple", "advanced"]

SIMPLE_CONFIDENCE = 0.8
SIMPLE_ASPECT_RANGE = (0.8, 2.5)
SIMPLE_MIN_SIDE = 50.0

CLASSIFIER_WEIGHT = 0.5
SKIN_WEIGHT = 0.3
PATTERN_WEIGHT = 0.2

# logistic over the summed Haar responses (each in [-1, 1])
_GAIN = 10.0
_BIAS = 2.0
# luminance levels a region must differ by to count as darker/brighter
_PATTERN_MARGIN = 8.0
_SYMMETRY_TOLERANCE = 0.1
_MIN_WORK_WINDOW = 12

# (top, left, bottom, right) as fractions of the window side
_EYES = (0.20, 0.10, 0.45, 0.90)
_CHEEKS = (0.45, 0.10, 0.70, 0.90)
_NOSE = (0.30, 0.40, 0.65, 0.60)
_NOSE_LEFT = (0.30, 0.20, 0.65, 0.40)
_NOSE_RIGHT = (0.30, 0.60, 0.65, 0.80)
_MOUTH = (0.70, 0.25, 0.85, 0.75)
_CHIN = (0.85, 0.25, 1.00, 0.75)
_LEFT_HALF = (0.10, 0.00, 0.90, 0.50)
_RIGHT_HALF = (0.10, 0.50, 0.90, 1.00)


def skin_mask(pixels: NDArray[np.uint8]) -> NDArray[np.float64]:
    """1.0 where an RGB pixel passes the skin-colour rule, else 0.0."""
    rgb = pixels.astype(np.int16)
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    mask = (r > 95) & (g > 40) & (b > 20) & (r > g) & (g >= b) & (r - g > 15) & (r - b > 15)
    return mask.astype(np.float64)


def integral_image(values: NDArray[np.floating]) -> NDArray[np.float64]:
    """Summed-area table with a zero first row and column."""
    table = np.asarray(values, dtype=np.float64).cumsum(axis=0).cumsum(axis=1)
    return np.pad(table, ((1, 0), (1, 0)))


def region_mean(
    table: NDArray[np.float64],
    xs: NDArray[np.intp],
    ys: NDArray[np.intp],
    size: int,
    region: tuple[float, float, float, float],
) -> NDArray[np.float64]:
    """Mean of ``region`` inside every window of side ``size`` at ``(xs, ys)``."""
    top, left, bottom, right = region
    y0 = ys + round(top * size)
    x0 = xs + round(left * size)
    y1 = ys + max(round(bottom * size), round(top * size) + 1)
    x1 = xs + max(round(right * size), round(left * size) + 1)
    total = table[y1, x1] - table[y0, x1] - table[y1, x0] + table[y0, x0]
    return total / ((y1 - y0) * (x1 - x0))


class HeuristicDetector:
    """Pure-CPU face detector that needs no neural weights."""

    def __init__(
        self,
        mode: HeuristicMode = "advanced",
        threshold: float = 0.5,
        nms_threshold: float = 0.3,
        min_window: int = 40,
        max_side: int = 320,
        scale_step: float = 1.25,
    ) -> None:
        if scale_step <= 1.0:
            raise ValueError("scale_step must be greater than 1")
        self._mode = mode
        self._threshold = threshold
        self._nms_threshold = nms_threshold
        self._min_window = min_window
        self._max_side = max_side
        self._scale_step = scale_step

    @classmethod
    def from_settings(cls, settings: Settings) -> HeuristicDetector:
        return cls(
            mode=settings.heuristic_mode,
            threshold=settings.heuristic_threshold,
            nms_threshold=settings.heuristic_nms,
            min_window=settings.heuristic_min_window,
            max_side=settings.heuristic_max_side,
        )

    @property
    def name(self) -> str:
        return f"heuristic_{self._mode}"

    @property
    def mode(self) -> HeuristicMode:
        return self._mode

    def detect(self, image: ImageBuffer) -> list[FaceBox]:
        if self._mode == "simple":
            return self._detect_simple(image)
        return self._detect_advanced(image)

    # -- Simple ---------------------------------------------------------------

    @staticmethod
    def _detect_simple(image: ImageBuffer) -> list[FaceBox]:
        width, height = float(image.width), float(image.height)
        aspect = height / width
        low, high = SIMPLE_ASPECT_RANGE
        if not low < aspect < high:
            return []

        face_w = width * 0.6
        face_h = height * 0.7
        face_x = max(0.0, min((width - face_w) / 2, width - face_w))
        face_y = max(0.0, min(height * 0.1, height - face_h))
        face_w = min(face_w, width - face_x)
        face_h = min(face_h, height - face_y)
        if face_w <= SIMPLE_MIN_SIDE or face_h <= SIMPLE_MIN_SIDE:
            return []
        return [FaceBox(face_x, face_y, face_w, face_h, SIMPLE_CONFIDENCE)]

    # -- Advanced -------------------------------------------------------------

    def _detect_advanced(self, image: ImageBuffer) -> list[FaceBox]:
        scale = min(1.0, self._max_side / max(image.width, image.height))
        work = image
        if scale < 1.0:
            work = image.resize(max(1, round(image.width * scale)), max(1, round(image.height * scale)))

        gray = integral_image(work.grayscale())
        skin = integral_image(skin_mask(work.pixels))

        all_coords: list[NDArray[np.float64]] = []
        all_scores: list[NDArray[np.float64]] = []
        size = max(_MIN_WORK_WINDOW, round(self._min_window * scale))
        while size <= min(work.width, work.height):
            stride = max(1, size // 8)
            ys, xs = np.meshgrid(
                np.arange(0, work.height - size + 1, stride),
                np.arange(0, work.width - size + 1, stride),
                indexing="ij",
            )
            xs, ys = xs.ravel(), ys.ravel()
            scores = self.score_windows(gray, skin, xs, ys, size)
            hits = scores > self._threshold
            if np.any(hits):
                x1 = xs[hits] / scale
                y1 = ys[hits] / scale
                side = size / scale
                all_coords.append(np.stack([x1, y1, x1 + side, y1 + side], axis=1))
                all_scores.append(scores[hits])
            size = max(size + 1, round(size * self._scale_step))

        if not all_scores:
            return []
        coords = np.concatenate(all_coords)
        scores = np.concatenate(all_scores)
        keep = nms_indices(coords, scores, self._nms_threshold)
        logger.debug("Heuristic windows: %d above threshold, %d after NMS", scores.size, len(keep))
        return [
            FaceBox(
                float(coords[i, 0]),
                float(coords[i, 1]),
                float(coords[i, 2] - coords[i, 0]),
                float(coords[i, 3] - coords[i, 1]),
                float(scores[i]),
            )
            for i in keep
        ]

    @staticmethod
    def score_windows(
        gray: NDArray[np.float64],
        skin: NDArray[np.float64],
        xs: NDArray[np.intp],
        ys: NDArray[np.intp],
        size: int,
    ) -> NDArray[np.float64]:
        """Combined face score for square windows.

        Args:
            gray: Integral image of luminance.
            skin: Integral image of the skin mask.
            xs: Window left edges.
            ys: Window top edges.
            size: Window side in pixels.

        Returns:
            ``0.5 * classifier + 0.3 * skin_ratio + 0.2 * pattern`` per window.
        """
        eyes = region_mean(gray, xs, ys, size, _EYES)
        cheeks = region_mean(gray, xs, ys, size, _CHEEKS)
        nose = region_mean(gray, xs, ys, size, _NOSE)
        flanks = (region_mean(gray, xs, ys, size, _NOSE_LEFT) + region_mean(gray, xs, ys, size, _NOSE_RIGHT)) / 2
        mouth = region_mean(gray, xs, ys, size, _MOUTH)
        chin = region_mean(gray, xs, ys, size, _CHIN)
        left = region_mean(gray, xs, ys, size, _LEFT_HALF)
        right = region_mean(gray, xs, ys, size, _RIGHT_HALF)

        haar = ((cheeks - eyes) + (nose - flanks) + (chin - mouth)) / 255.0
        classifier = 1.0 / (1.0 + np.exp(-(_GAIN * haar - _BIAS)))

        skin_ratio = region_mean(skin, xs, ys, size, (0.0, 0.0, 1.0, 1.0))

        eyes_darker = (cheeks - eyes) > _PATTERN_MARGIN
        nose_brighter = (nose - eyes) > _PATTERN_MARGIN
        symmetric = np.abs(left - right) <= _SYMMETRY_TOLERANCE * np.maximum(np.maximum(left, right), 1.0)
        pattern = (eyes_darker.astype(np.float64) + nose_brighter + symmetric) / 3.0

        return CLASSIFIER_WEIGHT * classifier + SKIN_WEIGHT * skin_ratio + PATTERN_WEIGHT * pattern
