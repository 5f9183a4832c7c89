"""Optional presentation-attack (anti-spoofing) scorer.

The model emits per-leaf class predictions and a leaf-node mask; the spoof
score is ``sum(|class_pred| * leaf_node_mask)``. Higher means more likely a
spoof.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from facegate.ml.errors import InferenceError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facegate.ml.preprocessing import ImageBuffer
    from facegate.ml.runtime import InferenceRuntime

DEFAULT_INPUT_SIZE = 256
DEFAULT_THRESHOLD = 0.2


class SpoofChecker:
    """Scores face crops with an anti-spoofing network."""

    def __init__(self, runtime: InferenceRuntime, threshold: float = DEFAULT_THRESHOLD) -> None:
        if len(runtime.output_shapes) < 2:
            raise InferenceError(f"Anti-spoofing model '{runtime.name}' must have class and leaf-mask outputs")
        self._runtime = runtime
        self._threshold = threshold
        self._input_size = runtime.input_shape.square_size(DEFAULT_INPUT_SIZE)

    @property
    def threshold(self) -> float:
        return self._threshold

    def score(self, face: ImageBuffer) -> float:
        """Return the spoof score of a face crop."""
        resized = face.resize(self._input_size, self._input_size)
        tensor: NDArray[np.float32] = resized.pixels.astype(np.float32)[np.newaxis] / 255.0
        if self._runtime.input_shape.layout == "NCHW":
            tensor = tensor.transpose(0, 3, 1, 2)
        class_pred, leaf_mask = self._runtime.run(np.ascontiguousarray(tensor))[:2]
        class_pred = class_pred.reshape(-1)
        leaf_mask = leaf_mask.reshape(-1)
        if class_pred.shape != leaf_mask.shape:
            raise InferenceError(f"Anti-spoofing outputs disagree: {class_pred.shape} vs {leaf_mask.shape}")
        return float(np.sum(np.abs(class_pred) * leaf_mask))

    def is_spoof(self, score: float) -> bool:
        return score > self._threshold
