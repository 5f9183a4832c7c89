"""Model runtime abstraction.

Every network in the pipeline is reached through the ``InferenceRuntime``
protocol: a single tensor in, a list of tensors out, with shapes discovered
from the loaded model rather than assumed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol

import numpy as np

from facegate.ml.errors import InferenceError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)

Layout = Literal["NCHW", "NHWC"]


@dataclass(frozen=True)
class TensorShape:
    """Tensor dimensions as reported by a model; ``None`` marks a dynamic axis."""

    dims: tuple[int | None, ...]

    @classmethod
    def from_onnx(cls, shape: Sequence[object]) -> TensorShape:
        """Build from an ONNX shape where symbolic dims are strings or None."""
        dims: list[int | None] = []
        for dim in shape:
            dims.append(dim if isinstance(dim, int) and dim > 0 else None)
        return cls(tuple(dims))

    @property
    def rank(self) -> int:
        return len(self.dims)

    @property
    def layout(self) -> Layout:
        """Channel placement of a rank-4 image tensor.

        Channels-first when axis 1 holds 1 or 3 channels and the last axis
        does not; otherwise channels-last.
        """
        if self.rank != 4:
            return "NHWC"
        if self.dims[1] in (1, 3) and self.dims[3] not in (1, 3):
            return "NCHW"
        return "NHWC"

    @property
    def channels(self) -> int | None:
        if self.rank != 4:
            return self.dims[-1] if self.dims else None
        return self.dims[1] if self.layout == "NCHW" else self.dims[3]

    @property
    def spatial(self) -> tuple[int | None, int | None]:
        """(height, width) of a rank-4 tensor."""
        if self.rank != 4:
            return (None, None)
        if self.layout == "NCHW":
            return (self.dims[2], self.dims[3])
        return (self.dims[1], self.dims[2])

    @property
    def batch_fixed(self) -> bool:
        """True when the batch axis is pinned to a single sample."""
        return bool(self.dims) and self.dims[0] == 1

    def square_size(self, default: int) -> int:
        """Spatial side length, or ``default`` when dynamic."""
        height, width = self.spatial
        if height is not None and width is not None and height != width:
            raise InferenceError(f"Expected a square input, model reports {height}x{width}")
        return height or width or default

    def __str__(self) -> str:
        return "[" + ", ".join("?" if d is None else str(d) for d in self.dims) + "]"


class InferenceRuntime(Protocol):
    """Protocol for a loaded model: tensor in, tensors out."""

    @property
    def name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def input_shape(self) -> TensorShape:
        """Return the shape of the single input tensor."""
        ...

    @property
    def output_shapes(self) -> list[TensorShape]:
        """Return the shapes of all output tensors, in output order."""
        ...

    def run(self, tensor: NDArray[np.float32]) -> list[NDArray[np.float32]]:
        """Run a forward pass.

        Args:
            tensor: Contiguous float32 input matching ``input_shape``.

        Returns:
            Output tensors in model order.

        Raises:
            InferenceError: On shape mismatch or runtime failure.
        """
        ...


class OnnxRuntimeModel:
    """``InferenceRuntime`` backed by an ONNX Runtime session."""

    def __init__(self, name: str, session: InferenceSession) -> None:
        self._name = name
        self._session = session
        inputs = session.get_inputs()
        if len(inputs) != 1:
            raise InferenceError(f"Model '{name}' must have exactly one input, found {len(inputs)}")
        self._input_name = inputs[0].name
        self._input_shape = TensorShape.from_onnx(inputs[0].shape)
        self._output_shapes = [TensorShape.from_onnx(o.shape) for o in session.get_outputs()]
        logger.info(
            "Model %s: input %s, outputs %s",
            name,
            self._input_shape,
            ", ".join(str(s) for s in self._output_shapes),
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def input_shape(self) -> TensorShape:
        return self._input_shape

    @property
    def output_shapes(self) -> list[TensorShape]:
        return list(self._output_shapes)

    def run(self, tensor: NDArray[np.float32]) -> list[NDArray[np.float32]]:
        _check_rank(self._name, self._input_shape, tensor)
        try:
            outputs = self._session.run(None, {self._input_name: np.ascontiguousarray(tensor, dtype=np.float32)})
        except Exception as exc:
            raise InferenceError(f"Inference failed for '{self._name}': {exc}") from exc
        return [np.asarray(o, dtype=np.float32) for o in outputs]


def _check_rank(name: str, expected: TensorShape, tensor: NDArray[np.float32]) -> None:
    if tensor.ndim != expected.rank:
        raise InferenceError(f"Model '{name}' expects rank {expected.rank} input {expected}, got shape {tensor.shape}")
    for axis, (want, got) in enumerate(zip(expected.dims, tensor.shape, strict=True)):
        if want is not None and want != got:
            raise InferenceError(f"Model '{name}' axis {axis} expects {want}, got {got} (input {expected})")
