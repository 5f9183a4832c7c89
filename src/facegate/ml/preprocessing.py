"""Image preprocessing: decoding, cropping, resizing, and tensor conversion.

``ImageBuffer`` is the raster type shared by every pipeline stage. It wraps a
read-only HxWx3 RGB uint8 array; every operation returns a new buffer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from facegate.ml.errors import DecodeFailure, ImageTooLarge
from facegate.ml.geometry import Rect

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facegate.ml.runtime import TensorShape

# ITU-R BT.601 luma weights
_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float32)


@dataclass(frozen=True, eq=False)
class ImageBuffer:
    """A decoded RGB raster."""

    pixels: NDArray[np.uint8]

    def __post_init__(self) -> None:
        pixels = self.pixels
        if pixels.ndim != 3 or pixels.shape[2] != 3:
            raise ValueError(f"Expected an HxWx3 array, got shape {pixels.shape}")
        if pixels.shape[0] <= 0 or pixels.shape[1] <= 0:
            raise ValueError("Image dimensions must be positive")
        if pixels.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixels, got {pixels.dtype}")
        frozen = np.ascontiguousarray(pixels)
        if frozen is pixels:
            frozen = pixels.copy()
        frozen.setflags(write=False)
        object.__setattr__(self, "pixels", frozen)

    @classmethod
    def from_array(cls, array: NDArray[np.uint8]) -> ImageBuffer:
        """Wrap an already-decoded raster (HxWx3 RGB, or HxW grayscale)."""
        array = np.asarray(array)
        if array.ndim == 2:
            array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
        return cls(array.astype(np.uint8, copy=False))

    @classmethod
    def filled(cls, width: int, height: int, rgb: tuple[int, int, int]) -> ImageBuffer:
        """Create a uniform image of one colour."""
        pixels = np.empty((height, width, 3), dtype=np.uint8)
        pixels[:, :] = rgb
        return cls(pixels)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> tuple[int, int]:
        """(width, height)."""
        return (self.width, self.height)

    def resize(self, width: int, height: int) -> ImageBuffer:
        """Return a bilinearly resized copy."""
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid target size {width}x{height}")
        if (width, height) == self.size:
            return self
        interpolation = cv2.INTER_AREA if width < self.width and height < self.height else cv2.INTER_LINEAR
        return ImageBuffer(cv2.resize(self.pixels, (width, height), interpolation=interpolation))

    def crop(self, x: int, y: int, width: int, height: int) -> ImageBuffer:
        """Return the sub-image at integer coordinates, clamped to bounds."""
        x1 = min(max(x, 0), self.width - 1)
        y1 = min(max(y, 0), self.height - 1)
        x2 = min(max(x + width, x1 + 1), self.width)
        y2 = min(max(y + height, y1 + 1), self.height)
        return ImageBuffer(self.pixels[y1:y2, x1:x2])

    def grayscale(self) -> NDArray[np.float32]:
        """Luminance in 0..255 as an HxW float32 array."""
        return self.pixels.astype(np.float32) @ _LUMA


def decode_image(data: bytes, max_pixels: int | None = None) -> ImageBuffer:
    """Decode JPEG/PNG bytes into an RGB ``ImageBuffer``.

    Raises:
        DecodeFailure: If the bytes are empty or not a supported image.
        ImageTooLarge: If the decoded image exceeds ``max_pixels``.
    """
    if not data:
        raise DecodeFailure("Image data is empty")
    decoded = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if decoded is None:
        raise DecodeFailure("Failed to decode image bytes")
    height, width = decoded.shape[:2]
    if max_pixels is not None and width * height > max_pixels:
        raise ImageTooLarge(f"Image of {width}x{height} exceeds the {max_pixels} pixel limit")
    return ImageBuffer(cv2.cvtColor(decoded, cv2.COLOR_BGR2RGB))


def encode_png(image: ImageBuffer) -> bytes:
    """Encode an ``ImageBuffer`` as PNG bytes."""
    ok, encoded = cv2.imencode(".png", cv2.cvtColor(image.pixels, cv2.COLOR_RGB2BGR))
    if not ok:
        raise DecodeFailure("Failed to encode image as PNG")
    return encoded.tobytes()


def crop_square(image: ImageBuffer, box: Rect, min_size: int = 5) -> tuple[ImageBuffer, Rect] | None:
    """Crop a square region centred on ``box``.

    The box is clamped to the image, grown to a square around its centre using
    the longer side, and clamped again.

    Returns:
        The crop together with the region it covers, or None when the clamped
        region is smaller than ``min_size`` on either side.
    """
    clamped = box.clamp(image.width, image.height)
    if clamped.width < min_size or clamped.height < min_size:
        return None

    half = max(clamped.width, clamped.height) / 2
    center = clamped.center
    square = Rect(center.x - half, center.y - half, 2 * half, 2 * half).clamp(image.width, image.height)

    x = round(square.x)
    y = round(square.y)
    width = round(square.width)
    height = round(square.height)
    if width < min_size or height < min_size:
        return None
    return image.crop(x, y, width, height), Rect(x, y, width, height)


def crop_with_padding(image: ImageBuffer, box: Rect, padding: float) -> ImageBuffer:
    """Crop ``box`` grown by ``padding`` times its size on every side."""
    padded = Rect(
        box.x - box.width * padding,
        box.y - box.height * padding,
        box.width * (1 + 2 * padding),
        box.height * (1 + 2 * padding),
    ).clamp(image.width, image.height)
    return image.crop(round(padded.x), round(padded.y), max(round(padded.width), 1), max(round(padded.height), 1))


def normalize_pixels(pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
    """Map 8-bit channel values to [-1, 1] via ``(v / 255 - 0.5) / 0.5``."""
    return (pixels.astype(np.float32) / 255.0 - 0.5) / 0.5


def to_tensor(images: list[ImageBuffer], shape: TensorShape) -> NDArray[np.float32]:
    """Stack images into a normalised batch laid out for ``shape``.

    All images must already have the model's spatial size. Single-channel
    models receive the mean of the normalised RGB channels.
    """
    batch = np.stack([normalize_pixels(img.pixels) for img in images])
    if shape.channels == 1:
        batch = batch.mean(axis=3, keepdims=True)
    if shape.layout == "NCHW":
        batch = batch.transpose(0, 3, 1, 2)
    return np.ascontiguousarray(batch, dtype=np.float32)
