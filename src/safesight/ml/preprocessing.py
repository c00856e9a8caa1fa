"""Image preprocessing pipeline.

Turns a raw pixel buffer into the fixed-size float tensor the classifier
expects:

1. interpret the buffer as an HxWxC grid (C = 1, 3 or 4; alpha is dropped),
2. replicate grayscale to RGB,
3. bilinear resize to SxS,
4. scale 8-bit values to [0, 1],
5. add a leading batch dimension.

The resize follows the ``align_corners=False`` / no half-pixel-centers
convention (``src = dst * in / out``) so tensors match what the models were
exported against.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from safesight.ml.errors import InvalidImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

IMAGE_MAX_PIXEL_VALUE: float = 255.0
SUPPORTED_CHANNELS: tuple[int, ...] = (1, 3, 4)


@dataclass(frozen=True)
class RawImage:
    """Caller-owned pixel buffer plus the identifier of where it came from."""

    pixels: bytes
    width: int
    height: int
    source_id: str
    channels: int = 4


def to_pixel_grid(image: RawImage) -> NDArray[np.uint8]:
    """Interpret a RawImage as an HxWx3 RGB uint8 array.

    Raises:
        InvalidImageError: If the buffer is empty, the dimensions are not
            positive, the channel count is unsupported, or the buffer length
            does not match ``width * height * channels``.
    """
    if not image.pixels:
        raise InvalidImageError(f"Empty pixel buffer for {image.source_id}")
    if image.width <= 0 or image.height <= 0:
        raise InvalidImageError(f"Invalid dimensions {image.width}x{image.height} for {image.source_id}")
    if image.channels not in SUPPORTED_CHANNELS:
        raise InvalidImageError(f"Unsupported channel count {image.channels} for {image.source_id}")

    expected = image.width * image.height * image.channels
    if len(image.pixels) != expected:
        raise InvalidImageError(
            f"Pixel buffer for {image.source_id} has {len(image.pixels)} bytes, "
            f"expected {expected} ({image.width}x{image.height}x{image.channels})"
        )

    grid = np.frombuffer(image.pixels, dtype=np.uint8).reshape(image.height, image.width, image.channels)
    if image.channels == 1:
        return np.repeat(grid, 3, axis=2)
    return grid[:, :, :3]


def resize_bilinear(image: NDArray[np.generic], size: int) -> NDArray[np.float32]:
    """Resize an HxWxC array to size x size with bilinear interpolation."""
    in_h, in_w = image.shape[:2]
    src = image.astype(np.float32)

    ys = np.arange(size, dtype=np.float32) * np.float32(in_h / size)
    y0 = np.floor(ys).astype(np.intp)
    y1 = np.minimum(y0 + 1, in_h - 1)
    wy = (ys - y0)[:, None, None]

    xs = np.arange(size, dtype=np.float32) * np.float32(in_w / size)
    x0 = np.floor(xs).astype(np.intp)
    x1 = np.minimum(x0 + 1, in_w - 1)
    wx = (xs - x0)[None, :, None]

    top_rows = src[y0]
    bottom_rows = src[y1]
    top = top_rows[:, x0] * (1.0 - wx) + top_rows[:, x1] * wx
    bottom = bottom_rows[:, x0] * (1.0 - wx) + bottom_rows[:, x1] * wx
    return (top * (1.0 - wy) + bottom * wy).astype(np.float32)


def preprocess(image: RawImage, size: int) -> NDArray[np.float32]:
    """Convert a RawImage into a (1, size, size, 3) float32 tensor in [0, 1]."""
    rgb = to_pixel_grid(image)
    resized = resize_bilinear(rgb, size)
    # Interpolation weights can overshoot 255 by an ulp.
    normalized = np.clip(resized / np.float32(IMAGE_MAX_PIXEL_VALUE), 0.0, 1.0)
    return np.expand_dims(normalized, axis=0).astype(np.float32)


def zeros_tensor(size: int) -> NDArray[np.float32]:
    """Return a zero-filled tensor of the model input shape, used for warm-up."""
    return np.zeros((1, size, size, 3), dtype=np.float32)
