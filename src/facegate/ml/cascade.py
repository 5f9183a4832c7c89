"""Three-stage MTCNN cascade detector (P-Net, R-Net, O-Net).

Architecture:
    scale pyramid -> P-Net proposals -> NMS
        -> square crops @24 -> R-Net refine -> NMS (low-threshold retry)
        -> square crops @48 -> O-Net output + landmarks -> NMS

The networks are reached through ``InferenceRuntime``; input sizes, tensor
layout and head order are read from the loaded models.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from facegate.ml.errors import InferenceError
from facegate.ml.face_detector import LANDMARK_NAMES, FaceBox
from facegate.ml.geometry import Point, nms, nms_indices
from facegate.ml.preprocessing import crop_square, to_tensor

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facegate.config import Settings
    from facegate.ml.preprocessing import ImageBuffer
    from facegate.ml.runtime import InferenceRuntime, Layout

logger = logging.getLogger(__name__)

PNET_CELL = 12
PNET_STRIDE = 2
RNET_SIZE = 24
ONET_SIZE = 48


@dataclass(frozen=True)
class CascadeConfig:
    """Thresholds and pyramid parameters for the cascade."""

    min_face_size: float = 20.0
    scale_factor: float = 0.709
    pnet_threshold: float = 0.6
    rnet_threshold: float = 0.7
    rnet_fallback_threshold: float = 0.3
    rnet_fallback_top_k: int = 20
    onet_threshold: float = 0.7
    pnet_nms: float = 0.5
    rnet_nms: float = 0.7
    onet_nms: float = 0.7
    min_crop_size: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> CascadeConfig:
        return cls(
            min_face_size=settings.min_face_size,
            scale_factor=settings.scale_factor,
            pnet_threshold=settings.pnet_threshold,
            rnet_threshold=settings.rnet_threshold,
            rnet_fallback_threshold=settings.rnet_fallback_threshold,
            rnet_fallback_top_k=settings.rnet_fallback_top_k,
            onet_threshold=settings.onet_threshold,
            pnet_nms=settings.pnet_nms,
            rnet_nms=settings.rnet_nms,
            onet_nms=settings.onet_nms,
        )


@dataclass(frozen=True)
class ScaleLevel:
    """One entry of the image pyramid."""

    scale: float
    width: int
    height: int


def scale_pyramid(width: int, height: int, min_face_size: float = 20.0, factor: float = 0.709) -> list[ScaleLevel]:
    """Compute the P-Net image pyramid.

    The first scale maps ``min_face_size`` onto the 12 px P-Net cell; each
    following scale shrinks by ``factor`` until the shorter image side would
    drop below 12 px.
    """
    if min_face_size <= 0:
        raise ValueError("min_face_size must be positive")
    if not 0.0 < factor < 1.0:
        raise ValueError("factor must be in (0, 1)")

    scale = PNET_CELL / min_face_size
    min_side = min(width, height) * scale
    levels: list[ScaleLevel] = []
    while min_side >= PNET_CELL:
        levels.append(ScaleLevel(scale, math.ceil(width * scale), math.ceil(height * scale)))
        scale *= factor
        min_side *= factor
    return levels


@dataclass(frozen=True)
class _Heads:
    prob: NDArray[np.float32]
    reg: NDArray[np.float32]
    landmarks: NDArray[np.float32] | None


def _split_heads(outputs: list[NDArray[np.float32]], layout: Layout) -> _Heads:
    """Identify probability, regression and landmark outputs by channel count.

    Every returned array is channels-last.
    """
    prob = reg = landmarks = None
    for out in outputs:
        if out.ndim == 4 and layout == "NCHW":
            out = np.moveaxis(out, 1, -1)
        channels = out.shape[-1]
        if channels == 2:
            prob = out
        elif channels == 4:
            reg = out
        elif channels == 10:
            landmarks = out
        elif channels == 6:
            prob, reg = out[..., :2], out[..., 2:6]
        elif channels == 16:
            prob, reg, landmarks = out[..., :2], out[..., 2:6], out[..., 6:16]
        else:
            raise InferenceError(f"Unrecognised cascade output with {channels} channels: {out.shape}")
    if prob is None or reg is None:
        raise InferenceError("Cascade network must produce probability and regression outputs")
    return _Heads(prob=prob, reg=reg, landmarks=landmarks)


class CascadeDetector:
    """MTCNN face detector over three loaded networks."""

    def __init__(
        self,
        pnet: InferenceRuntime,
        rnet: InferenceRuntime,
        onet: InferenceRuntime,
        config: CascadeConfig | None = None,
    ) -> None:
        self._pnet = pnet
        self._rnet = rnet
        self._onet = onet
        self._config = config or CascadeConfig()
        self._rnet_size = rnet.input_shape.square_size(RNET_SIZE)
        self._onet_size = onet.input_shape.square_size(ONET_SIZE)

    @property
    def name(self) -> str:
        return "mtcnn"

    @property
    def config(self) -> CascadeConfig:
        return self._config

    def detect(self, image: ImageBuffer) -> list[FaceBox]:
        """Run all three stages. Returns an empty list when any stage finds nothing."""
        proposals = self.propose(image)
        logger.debug("P-Net: %d candidates", len(proposals))
        if not proposals:
            return []

        refined = self.refine(image, proposals)
        logger.debug("R-Net: %d candidates", len(refined))
        if not refined:
            return []

        faces = self.output(image, refined)
        logger.debug("O-Net: %d faces", len(faces))
        return faces

    # -- Stage P --------------------------------------------------------------

    def propose(self, image: ImageBuffer) -> list[FaceBox]:
        """Dense proposals over the scale pyramid, merged with NMS."""
        cfg = self._config
        all_coords: list[NDArray[np.float64]] = []
        all_scores: list[NDArray[np.float64]] = []

        for level in scale_pyramid(image.width, image.height, cfg.min_face_size, cfg.scale_factor):
            if level.width < PNET_CELL or level.height < PNET_CELL:
                continue
            scaled = image.resize(level.width, level.height)
            tensor = to_tensor([scaled], self._pnet.input_shape)
            heads = _split_heads(self._pnet.run(tensor), self._pnet.input_shape.layout)
            coords, scores = self._generate_boxes(heads.prob[0, :, :, 1], heads.reg[0], level.scale)
            if scores.size == 0:
                continue
            keep = nms_indices(coords, scores, cfg.pnet_nms)
            all_coords.append(coords[keep])
            all_scores.append(scores[keep])

        if not all_scores:
            return []
        coords = np.concatenate(all_coords)
        scores = np.concatenate(all_scores)
        keep = nms_indices(coords, scores, cfg.pnet_nms)

        boxes: list[FaceBox] = []
        for i in keep:
            x1, y1, x2, y2 = coords[i]
            box = FaceBox(float(x1), float(y1), float(x2 - x1), float(y2 - y1), float(scores[i]))
            if box.is_valid:
                boxes.append(box)
        return boxes

    def _generate_boxes(
        self, prob: NDArray[np.float32], reg: NDArray[np.float32], scale: float
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        rows, cols = np.nonzero(prob > self._config.pnet_threshold)
        if rows.size == 0:
            return np.empty((0, 4)), np.empty((0,))
        deltas = reg[rows, cols].astype(np.float64)
        x = (PNET_STRIDE * cols).astype(np.float64)
        y = (PNET_STRIDE * rows).astype(np.float64)
        coords = np.stack(
            [
                (x + deltas[:, 0] * PNET_CELL) / scale,
                (y + deltas[:, 1] * PNET_CELL) / scale,
                (x + PNET_CELL + deltas[:, 2] * PNET_CELL) / scale,
                (y + PNET_CELL + deltas[:, 3] * PNET_CELL) / scale,
            ],
            axis=1,
        )
        scores = np.clip(prob[rows, cols].astype(np.float64), 0.0, 1.0)
        return coords, scores

    # -- Stage R --------------------------------------------------------------

    def refine(self, image: ImageBuffer, proposals: list[FaceBox]) -> list[FaceBox]:
        """Score proposals with R-Net, retrying the best ones at a lower threshold."""
        cfg = self._config
        refined = self._refine_at(image, proposals, cfg.rnet_threshold)
        if refined:
            return refined

        top = sorted(proposals, key=lambda b: b.confidence, reverse=True)[: cfg.rnet_fallback_top_k]
        logger.info(
            "R-Net rejected all %d proposals; retrying top %d at threshold %.2f",
            len(proposals),
            len(top),
            cfg.rnet_fallback_threshold,
        )
        return self._refine_at(image, top, cfg.rnet_fallback_threshold)

    def _refine_at(self, image: ImageBuffer, proposals: list[FaceBox], threshold: float) -> list[FaceBox]:
        batch = self._crop_batch(image, proposals, self._rnet_size)
        if batch is None:
            return []
        owners, crops = batch
        heads = self._run(self._rnet, crops)
        scores = heads.prob.reshape(len(owners), -1)[:, 1]
        deltas = heads.reg.reshape(len(owners), -1)

        kept: list[FaceBox] = []
        for i, box in enumerate(owners):
            if scores[i] <= threshold:
                continue
            candidate = box.copy()
            candidate.apply_regression(deltas[i])
            candidate.confidence = float(np.clip(scores[i], 0.0, 1.0))
            if candidate.is_valid:
                kept.append(candidate)
        return nms(kept, self._config.rnet_nms)

    # -- Stage O --------------------------------------------------------------

    def output(self, image: ImageBuffer, candidates: list[FaceBox]) -> list[FaceBox]:
        """Final scoring, regression and landmark decoding with O-Net."""
        batch = self._crop_batch(image, candidates, self._onet_size)
        if batch is None:
            return []
        owners, crops = batch
        heads = self._run(self._onet, crops)
        scores = heads.prob.reshape(len(owners), -1)[:, 1]
        deltas = heads.reg.reshape(len(owners), -1)
        landmarks = heads.landmarks.reshape(len(owners), -1) if heads.landmarks is not None else None

        kept: list[FaceBox] = []
        for i, box in enumerate(owners):
            if scores[i] <= self._config.onet_threshold:
                continue
            face = box.copy()
            if landmarks is not None:
                face.landmarks = _decode_landmarks(box, landmarks[i])
            face.apply_regression(deltas[i])
            face.confidence = float(np.clip(scores[i], 0.0, 1.0))
            if face.is_valid:
                kept.append(face)
        return nms(kept, self._config.onet_nms)

    # -- Helpers --------------------------------------------------------------

    def _crop_batch(
        self, image: ImageBuffer, boxes: list[FaceBox], size: int
    ) -> tuple[list[FaceBox], list[ImageBuffer]] | None:
        owners: list[FaceBox] = []
        crops: list[ImageBuffer] = []
        for box in boxes:
            cropped = crop_square(image, box.to_rect(), self._config.min_crop_size)
            if cropped is None:
                continue
            crop, _ = cropped
            owners.append(box)
            crops.append(crop.resize(size, size))
        if not crops:
            return None
        return owners, crops

    @staticmethod
    def _run(runtime: InferenceRuntime, crops: list[ImageBuffer]) -> _Heads:
        """Run a fixed-size network over crops, batched when the model allows it."""
        shape = runtime.input_shape
        if shape.batch_fixed and len(crops) > 1:
            per_crop = [runtime.run(to_tensor([crop], shape)) for crop in crops]
            outputs = [np.concatenate(parts, axis=0) for parts in zip(*per_crop, strict=True)]
        else:
            outputs = runtime.run(to_tensor(crops, shape))
        heads = _split_heads(outputs, shape.layout)
        if heads.prob.shape[0] != len(crops):
            raise InferenceError(f"{runtime.name} returned {heads.prob.shape[0]} results for {len(crops)} crops")
        return heads


def _decode_landmarks(box: FaceBox, offsets: NDArray[np.float32]) -> dict[str, Point]:
    """Offsets are ``[x0..x4, y0..y4]`` as fractions of the box size."""
    return {
        name: Point(box.x + float(offsets[i]) * box.width, box.y + float(offsets[i + 5]) * box.height)
        for i, name in enumerate(LANDMARK_NAMES)
    }
