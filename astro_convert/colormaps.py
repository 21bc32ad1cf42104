"""
Color lookup tables mapping normalized values to 8-bit RGB.

Every map is a 4096-entry table; a value x in [0, 1] selects entry
round(x * 4095). The perceptual maps come from matplotlib, the rest are
closed-form ramps.
"""

from functools import lru_cache

import numpy as np
from matplotlib import colormaps as mpl_colormaps
from matplotlib.colors import hsv_to_rgb

LUT_SIZE = 4096

# Names resolved through matplotlib
MATPLOTLIB_MAPS = {
    "viridis": "viridis",
    "plasma": "plasma",
    "magma": "magma",
    "inferno": "inferno",
    "cividis": "cividis",
    "jet": "jet",
    "cubehelix": "cubehelix",
}


def _heat(v: np.ndarray) -> np.ndarray:
    return np.stack([
        np.minimum(1.0, v * 3),
        np.clip(v * 3 - 1, 0.0, 1.0),
        np.clip(v * 3 - 2, 0.0, 1.0),
    ], axis=-1)


def _cool(v: np.ndarray) -> np.ndarray:
    return np.stack([1.0 - v, v, np.ones_like(v)], axis=-1)


def _thermal(v: np.ndarray) -> np.ndarray:
    """Black, blue, magenta, red, yellow, white."""
    xs = [0.0, 0.25, 0.5, 0.75, 1.0]
    r = np.interp(v, xs, [0.0, 0.0, 1.0, 1.0, 1.0])
    g = np.interp(v, xs, [0.0, 0.0, 0.0, 0.0, 1.0])
    b = np.interp(v, xs, [0.0, 1.0, 1.0, 0.0, 1.0])
    return np.stack([r, g, b], axis=-1)


def _rainbow(v: np.ndarray) -> np.ndarray:
    """Hue sweep from red (0 deg) to magenta (300 deg)."""
    hsv = np.stack([v * 300.0 / 360.0, np.ones_like(v), np.ones_like(v)], axis=-1)
    return hsv_to_rgb(hsv)


def _channel(index: int):
    def ramp(v: np.ndarray) -> np.ndarray:
        rgb = np.zeros(v.shape + (3,))
        rgb[..., index] = v
        return rgb
    return ramp


FORMULA_MAPS = {
    "grayscale": lambda v: np.repeat(v[:, np.newaxis], 3, axis=1),
    "inverted": lambda v: np.repeat((1.0 - v)[:, np.newaxis], 3, axis=1),
    "heat": _heat,
    "cool": _cool,
    "thermal": _thermal,
    "rainbow": _rainbow,
    "red": _channel(0),
    "green": _channel(1),
    "blue": _channel(2),
}

COLORMAP_NAMES = tuple(FORMULA_MAPS) + tuple(MATPLOTLIB_MAPS)


def available_colormaps() -> list[str]:
    return list(COLORMAP_NAMES)


@lru_cache(maxsize=None)
def get_lut(name: str) -> np.ndarray:
    """Read-only (4096, 3) uint8 table for a named colormap."""
    values = np.linspace(0.0, 1.0, LUT_SIZE)
    if name in FORMULA_MAPS:
        rgb = FORMULA_MAPS[name](values)
    elif name in MATPLOTLIB_MAPS:
        rgb = mpl_colormaps[MATPLOTLIB_MAPS[name]](values)[:, :3]
    else:
        raise ValueError(f"Unknown colormap: {name}. Available: {list(COLORMAP_NAMES)}")
    lut = np.round(np.clip(rgb, 0.0, 1.0) * 255.0).astype(np.uint8)
    lut.flags.writeable = False
    return lut


def map_value(name: str, value: float) -> tuple[int, int, int]:
    """RGB triple for a single normalized value."""
    index = int(round(min(max(float(value), 0.0), 1.0) * (LUT_SIZE - 1)))
    r, g, b = get_lut(name)[index]
    return int(r), int(g), int(b)


def colorize(normalized: np.ndarray, name: str = "grayscale") -> np.ndarray:
    """
    Apply a colormap to a normalized (height, width) frame.

    Returns an opaque (height, width, 4) uint8 RGBA array.
    """
    lut = get_lut(name)
    values = np.asarray(normalized, dtype=np.float32)
    indices = np.clip(values, 0.0, 1.0) * (LUT_SIZE - 1)
    np.rint(indices, out=indices)
    idx = indices.astype(np.intp)
    del indices

    rgba = np.empty(values.shape + (4,), dtype=np.uint8)
    rgba[..., :3] = lut[idx]
    rgba[..., 3] = 255
    return rgba
