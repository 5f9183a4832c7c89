"""Rectangle and point primitives, IoU, and non-maximum suppression."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, TypeVar

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


@dataclass(frozen=True)
class Point:
    """A 2D point in image pixel coordinates."""

    x: float
    y: float


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle given by its top-left corner and size."""

    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return max(self.width, 0.0) * max(self.height, 0.0)

    @property
    def center(self) -> Point:
        return Point(self.x + self.width / 2, self.y + self.height / 2)

    def intersection(self, other: Rect) -> float:
        """Return the area shared with another rectangle."""
        left = max(self.x, other.x)
        top = max(self.y, other.y)
        right = min(self.right, other.right)
        bottom = min(self.bottom, other.bottom)
        if left >= right or top >= bottom:
            return 0.0
        return (right - left) * (bottom - top)

    def iou(self, other: Rect) -> float:
        """Return intersection-over-union with another rectangle."""
        return iou(self, other)

    def clamp(self, width: float, height: float) -> Rect:
        """Clip the rectangle to an image of the given size."""
        x1 = min(max(self.x, 0.0), width)
        y1 = min(max(self.y, 0.0), height)
        x2 = min(max(self.right, 0.0), width)
        y2 = min(max(self.bottom, 0.0), height)
        return Rect(x1, y1, x2 - x1, y2 - y1)


def iou(a: Rect, b: Rect) -> float:
    """Intersection area divided by union area; 0.0 for disjoint boxes."""
    inter = a.intersection(b)
    if inter <= 0.0:
        return 0.0
    union = a.area + b.area - inter
    if union <= 0.0:
        return 0.0
    return inter / union


class Scored(Protocol):
    """Anything NMS can rank: a confidence plus a rectangle."""

    @property
    def confidence(self) -> float: ...

    def to_rect(self) -> Rect: ...


S = TypeVar("S", bound=Scored)


def nms(boxes: Sequence[S], threshold: float) -> list[S]:
    """Greedy non-maximum suppression.

    Boxes are visited in descending confidence order. A box is kept unless its
    IoU with an already kept box exceeds ``threshold``.

    Args:
        boxes: Candidate detections.
        threshold: IoU above which the lower-confidence box is discarded.

    Returns:
        Kept boxes, highest confidence first.
    """
    if not boxes:
        return []
    ordered = sorted(boxes, key=lambda b: b.confidence, reverse=True)
    coords = np.array(
        [[r.x, r.y, r.right, r.bottom] for r in (b.to_rect() for b in ordered)],
        dtype=np.float64,
    )
    scores = np.array([b.confidence for b in ordered], dtype=np.float64)
    keep = nms_indices(coords, scores, threshold)
    return [ordered[i] for i in keep]


def nms_indices(coords: NDArray[np.float64], scores: NDArray[np.float64], threshold: float) -> list[int]:
    """Vectorised NMS over ``(N, 4)`` corner coordinates ``[x1, y1, x2, y2]``.

    Returns the indices of kept rows, highest score first. Ties keep the
    earlier row.
    """
    if coords.shape[0] == 0:
        return []
    x1, y1, x2, y2 = coords[:, 0], coords[:, 1], coords[:, 2], coords[:, 3]
    areas = np.maximum(x2 - x1, 0.0) * np.maximum(y2 - y1, 0.0)
    order = np.argsort(-scores, kind="stable")

    keep: list[int] = []
    while order.size > 0:
        i = int(order[0])
        keep.append(i)
        rest = order[1:]
        xx1 = np.maximum(x1[i], x1[rest])
        yy1 = np.maximum(y1[i], y1[rest])
        xx2 = np.minimum(x2[i], x2[rest])
        yy2 = np.minimum(y2[i], y2[rest])
        inter = np.maximum(0.0, xx2 - xx1) * np.maximum(0.0, yy2 - yy1)
        union = areas[i] + areas[rest] - inter
        overlap = np.divide(inter, union, out=np.zeros_like(inter), where=union > 0)
        order = rest[overlap <= threshold]
    return keep
