"""Shared fixtures: numpy fake runtimes and synthetic images."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest
from numpy.lib.stride_tricks import sliding_window_view

from facegate.config import Settings
from facegate.ml.errors import ModelLoadFailure
from facegate.ml.preprocessing import ImageBuffer
from facegate.ml.runtime import TensorShape

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

# Synthetic portrait: a bright "face" block on a dark background.
PORTRAIT_SIZE = (480, 640)
FACE_RECT = (140, 160, 200, 260)  # x, y, width, height
BRIGHT = 230
DARK = 20


class FakeRuntime:
    """``InferenceRuntime`` backed by a Python function."""

    def __init__(
        self,
        name: str,
        input_dims: tuple[int | None, ...],
        output_dims: list[tuple[int | None, ...]],
        forward: Callable[[NDArray[np.float32]], list[NDArray[np.float32]]],
    ) -> None:
        self._name = name
        self._input = TensorShape(input_dims)
        self._outputs = [TensorShape(d) for d in output_dims]
        self._forward = forward
        self.calls: list[tuple[int, ...]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def input_shape(self) -> TensorShape:
        return self._input

    @property
    def output_shapes(self) -> list[TensorShape]:
        return list(self._outputs)

    def run(self, tensor: NDArray[np.float32]) -> list[NDArray[np.float32]]:
        self.calls.append(tuple(tensor.shape))
        return self._forward(tensor)


def _brightness(tensor: NDArray[np.float32]) -> NDArray[np.float32]:
    """Per-pixel mean over channels of an NCHW batch -> (N, H, W)."""
    return tensor.mean(axis=1)


def fake_pnet(bright_prob: float = 0.95, dark_prob: float = 0.02) -> FakeRuntime:
    """P-Net scoring each 12x12 window (stride 2) by its mean brightness."""

    def forward(tensor: NDArray[np.float32]) -> list[NDArray[np.float32]]:
        lum = _brightness(tensor)[0]
        windows = sliding_window_view(lum, (12, 12))[::2, ::2].mean(axis=(2, 3))
        face = np.where(windows > 0.3, bright_prob, dark_prob).astype(np.float32)
        prob = np.stack([1.0 - face, face])[np.newaxis]
        reg = np.zeros((1, 4, *face.shape), dtype=np.float32)
        return [prob, reg]

    return FakeRuntime("pnet", (1, 3, None, None), [(1, 2, None, None), (1, 4, None, None)], forward)


def fake_stage_net(
    name: str,
    size: int,
    bright_prob: float = 0.9,
    dark_prob: float = 0.05,
    landmarks: bool = False,
    batch: int | None = None,
) -> FakeRuntime:
    """R-Net/O-Net scoring each crop by its mean brightness."""

    def forward(tensor: NDArray[np.float32]) -> list[NDArray[np.float32]]:
        n = tensor.shape[0]
        mean = _brightness(tensor).reshape(n, -1).mean(axis=1)
        face = np.where(mean > 0.3, bright_prob, dark_prob).astype(np.float32)
        outputs = [np.stack([1.0 - face, face], axis=1), np.zeros((n, 4), dtype=np.float32)]
        if landmarks:
            offsets = np.array([0.3, 0.7, 0.5, 0.35, 0.65, 0.35, 0.35, 0.55, 0.75, 0.75], dtype=np.float32)
            outputs.append(np.tile(offsets, (n, 1)))
        return outputs

    outputs = [(batch, 2), (batch, 4)] + ([(batch, 10)] if landmarks else [])
    return FakeRuntime(name, (batch, 3, size, size), outputs, forward)


def _orthonormal(rows: int, cols: int, seed: int) -> NDArray[np.float64]:
    basis, _ = np.linalg.qr(np.random.default_rng(seed).standard_normal((rows, cols)))
    return basis


def fake_embedder(dim: int = 128, layout: str = "NCHW") -> FakeRuntime:
    """Embedding net: 4x4 average pool per channel lifted to ``dim`` dimensions."""
    basis = _orthonormal(dim, 48, seed=7)

    def forward(tensor: NDArray[np.float32]) -> list[NDArray[np.float32]]:
        x = tensor if layout == "NCHW" else tensor.transpose(0, 3, 1, 2)
        n, c, h, w = x.shape
        pooled = x.reshape(n, c, 4, h // 4, 4, w // 4).mean(axis=(3, 5)).reshape(n, -1)
        return [(pooled.astype(np.float64) @ basis.T).astype(np.float32)]

    input_dims = (1, 3, 112, 112) if layout == "NCHW" else (1, 112, 112, 3)
    return FakeRuntime("mobilefacenet", input_dims, [(1, dim)], forward)


def fake_anti_spoofing(class_pred: list[float], leaf_mask: list[float]) -> FakeRuntime:
    def forward(tensor: NDArray[np.float32]) -> list[NDArray[np.float32]]:
        return [np.array([class_pred], dtype=np.float32), np.array([leaf_mask], dtype=np.float32)]

    k = len(class_pred)
    return FakeRuntime("anti_spoofing", (1, 256, 256, 3), [(1, k), (1, k)], forward)


def fake_runtimes() -> dict[str, FakeRuntime]:
    return {
        "pnet": fake_pnet(),
        "rnet": fake_stage_net("rnet", 24),
        "onet": fake_stage_net("onet", 48, landmarks=True),
        "mobilefacenet": fake_embedder(),
    }


class FakeModelManager:
    """``ModelManager`` serving fake runtimes; unknown names fail to load."""

    def __init__(self, runtimes: dict[str, FakeRuntime]) -> None:
        self._runtimes = runtimes
        self.requested: list[str] = []

    def ensure_downloaded(self, model_name: str) -> object:
        raise NotImplementedError

    def get_runtime(self, model_name: str) -> FakeRuntime:
        self.requested.append(model_name)
        try:
            return self._runtimes[model_name]
        except KeyError:
            raise ModelLoadFailure(model_name, "not available in test") from None

    def get_loaded_models(self) -> list[str]:
        return sorted(set(self.requested) & set(self._runtimes))

    def shutdown(self) -> None:
        self._runtimes = {}


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/facegate_test_models",
        "model_repo": None,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def portrait_image(face_rgb: tuple[int, int, int] = (BRIGHT, BRIGHT, BRIGHT)) -> ImageBuffer:
    width, height = PORTRAIT_SIZE
    pixels = np.full((height, width, 3), DARK, dtype=np.uint8)
    x, y, w, h = FACE_RECT
    pixels[y : y + h, x : x + w] = face_rgb
    return ImageBuffer(pixels)


@pytest.fixture()
def portrait() -> ImageBuffer:
    return portrait_image()
