"""
Frame Module
============

Raw frame container shared by capture sources, the feature extractor and
the analysis scheduler, plus the JPEG encoding used for oracle requests.

Pixel layout:
    numpy uint8 array of shape (height, width, 3|4), RGB or RGBA.
    Flat RGBA byte buffers are accepted and reshaped on demand.
"""

import base64
import io
from dataclasses import dataclass
from typing import Union

import numpy as np
from PIL import Image

FrameBuffer = Union[np.ndarray, bytes, bytearray, memoryview]


@dataclass(slots=True, frozen=True)
class Frame:
    """
    One captured frame.

    Attributes:
        ts_ms: Capture timestamp in milliseconds
        width: Frame width in pixels
        height: Frame height in pixels
        pixels: RGB(A) pixel array, shape (height, width, channels)
    """
    ts_ms: int
    width: int
    height: int
    pixels: np.ndarray


def as_pixel_array(buffer: FrameBuffer, width: int, height: int) -> np.ndarray:
    """
    Normalize a frame buffer to an (height, width, channels) uint8 array.

    Args:
        buffer: numpy array or flat RGBA bytes
        width: Frame width in pixels
        height: Frame height in pixels

    Returns:
        Pixel array view (no copy when the input already has the right shape).

    Raises:
        ValueError: If the buffer size does not match the dimensions.
    """
    if isinstance(buffer, np.ndarray):
        pixels = buffer
        if pixels.ndim == 1:
            pixels = pixels.reshape(height, width, -1)
    else:
        flat = np.frombuffer(buffer, dtype=np.uint8)
        if flat.size != width * height * 4:
            raise ValueError(
                f"RGBA buffer of {flat.size} bytes does not match {width}x{height}"
            )
        pixels = flat.reshape(height, width, 4)

    if pixels.shape[0] != height or pixels.shape[1] != width or pixels.shape[2] < 3:
        raise ValueError(
            f"pixel array shape {pixels.shape} does not match {width}x{height}x(3|4)"
        )
    return pixels


def encode_jpeg_b64(pixels: np.ndarray, quality: int = 50) -> str:
    """
    Encode an RGB(A) pixel array as base64 JPEG (no data-URL prefix).

    Args:
        pixels: (height, width, 3|4) uint8 array
        quality: JPEG quality 1..95

    Returns:
        Base64 string of the JPEG bytes.
    """
    rgb = np.ascontiguousarray(pixels[:, :, :3], dtype=np.uint8)
    image = Image.fromarray(rgb)
    buf = io.BytesIO()
    image.save(buf, format="JPEG", quality=quality)
    return base64.b64encode(buf.getvalue()).decode("ascii")
