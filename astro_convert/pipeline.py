"""
Pixel pipeline: scientific samples -> stretch -> colormap -> RGBA.
"""

from typing import Optional

import numpy as np

from .colormaps import colorize
from .config import StretchOptions
from .models import ScientificImage
from .stretch import stretch

# Rec.709 luma coefficients
LUMA_WEIGHTS = (0.2126, 0.7152, 0.0722)


def process(samples, dims: Optional[tuple[int, int]] = None,
            options: Optional[StretchOptions] = None,
            colormap: str = "grayscale") -> np.ndarray:
    """
    Stretch one frame and apply a colormap.

    Returns an opaque (height, width, 4) uint8 RGBA array.
    """
    normalized = stretch(samples, dims, options)
    return colorize(normalized, colormap)


def render_image(image: ScientificImage, options: Optional[StretchOptions] = None,
                 colormap: str = "grayscale", frame: int = 0) -> np.ndarray:
    """Render one frame of a ScientificImage to RGBA."""
    index = min(max(int(frame), 0), image.depth - 1)
    return process(image.frame(index), None, options, colormap)


def render_frames(image: ScientificImage, options: Optional[StretchOptions] = None,
                  colormap: str = "grayscale"):
    """Lazily render every frame, in order."""
    for index in range(image.depth):
        yield process(image.frame(index), None, options, colormap)


def rgba_luma(rgba: np.ndarray) -> np.ndarray:
    """Rec.709 luma of an RGBA buffer as float32 in [0, 1]."""
    rgb = rgba[..., :3].astype(np.float32)
    luma = rgb @ np.array(LUMA_WEIGHTS, dtype=np.float32)
    luma /= 255.0
    return luma


def is_grayscale(rgba: np.ndarray) -> bool:
    """True when R == G == B for every pixel."""
    return bool(np.array_equal(rgba[..., 0], rgba[..., 1])
                and np.array_equal(rgba[..., 1], rgba[..., 2]))


def as_rgba_buffer(data, width: int, height: int) -> np.ndarray:
    """Accept a flat width*height*4 byte buffer or an (h, w, 4) array."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        rgba = np.frombuffer(data, dtype=np.uint8)
    else:
        rgba = np.asarray(data, dtype=np.uint8)
    if rgba.size != width * height * 4:
        raise ValueError(f"RGBA buffer has {rgba.size} bytes, expected {width * height * 4}")
    return rgba.reshape(height, width, 4)
