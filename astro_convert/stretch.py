"""
Stretch and tone mapping of scientific samples to normalized [0, 1] values.

Stages, each followed by a clamp to [0, 1]:
    clip/rescale -> stretch function -> gamma -> MTF -> brightness ->
    contrast -> curve preset -> output range

All stages run in place on a single float32 working copy.
"""

import math
from dataclasses import replace
from typing import Optional

import numpy as np
from astropy.visualization import ZScaleInterval
from scipy.interpolate import PchipInterpolator

from .config import CURVE_PRESETS, STRETCH_KINDS, StretchOptions

# Statistics (zscale, percentile) use a strided subset above this size
MAX_STAT_SAMPLES = 1_000_000

MIN_POINT_GAP = 1e-6
MIN_MIDTONE = 1e-4
GAMMA_RANGE = (0.01, 10.0)
CONTRAST_RANGE = (0.0, 10.0)
CURVE_LUT_SIZE = 4096

# Control points of the tone curve presets
CURVE_POINTS = {
    "linear": ((0.0, 0.0), (1.0, 1.0)),
    "sCurve": ((0.0, 0.0), (0.25, 0.15), (0.5, 0.5), (0.75, 0.85), (1.0, 1.0)),
    "brighten": ((0.0, 0.0), (0.25, 0.35), (0.5, 0.65), (0.75, 0.85), (1.0, 1.0)),
    "darken": ((0.0, 0.0), (0.25, 0.15), (0.5, 0.35), (0.75, 0.65), (1.0, 1.0)),
    "highContrast": ((0.0, 0.0), (0.2, 0.05), (0.5, 0.5), (0.8, 0.95), (1.0, 1.0)),
}


def _clamp(value, lo: float, hi: float, default: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(value):
        return default
    return min(max(value, lo), hi)


def _ordered_pair(lo: float, hi: float) -> tuple[float, float]:
    """Force lo < hi inside [0, 1]."""
    if hi <= lo:
        hi = min(1.0, lo + MIN_POINT_GAP)
        lo = min(lo, hi - MIN_POINT_GAP)
    return lo, hi


def validate_stretch_options(options: StretchOptions) -> StretchOptions:
    """
    Return a copy with every numeric field clamped into range.

    Out-of-range numbers are clamped, never rejected. Unknown kinds or
    curve presets raise ValueError.
    """
    if options.kind not in STRETCH_KINDS:
        raise ValueError(f"Unknown stretch kind: {options.kind}")
    if options.curve_preset not in CURVE_PRESETS:
        raise ValueError(f"Unknown curve preset: {options.curve_preset}")

    black = None if options.black_point is None else _clamp(options.black_point, 0.0, 1.0, 0.0)
    white = None if options.white_point is None else _clamp(options.white_point, 0.0, 1.0, 1.0)
    if black is not None and white is not None:
        black, white = _ordered_pair(black, white)
    elif black is not None and black >= 1.0:
        black = 1.0 - MIN_POINT_GAP
    elif white is not None and white <= 0.0:
        white = MIN_POINT_GAP

    out_black, out_white = _ordered_pair(
        _clamp(options.output_black, 0.0, 1.0, 0.0),
        _clamp(options.output_white, 0.0, 1.0, 1.0),
    )
    p_low = _clamp(options.percentile_low, 0.0, 100.0, 0.1)
    p_high = _clamp(options.percentile_high, 0.0, 100.0, 99.9)
    if p_high <= p_low:
        p_low, p_high = 0.1, 99.9

    return replace(
        options,
        black_point=black,
        white_point=white,
        gamma=_clamp(options.gamma, *GAMMA_RANGE, 1.0),
        midtone=_clamp(options.midtone, MIN_MIDTONE, 1.0 - MIN_MIDTONE, 0.5),
        brightness=_clamp(options.brightness, -1.0, 1.0, 0.0),
        contrast=_clamp(options.contrast, *CONTRAST_RANGE, 1.0),
        output_black=out_black,
        output_white=out_white,
        percentile_low=p_low,
        percentile_high=p_high,
        log_k=_clamp(options.log_k, 1e-6, 1e9, 1000.0),
        asinh_k=_clamp(options.asinh_k, 1e-6, 1e9, 10.0),
    )


def _finite_sample(data: np.ndarray) -> np.ndarray:
    """Finite values, stride-subsampled for large images."""
    flat = data.ravel()
    if flat.size > MAX_STAT_SAMPLES:
        flat = flat[::int(math.ceil(flat.size / MAX_STAT_SAMPLES))]
    return flat[np.isfinite(flat)]


def reference_range(data: np.ndarray) -> tuple[float, float]:
    """
    Range that black/white point fractions refer to.

    Data already inside [0, 1] keeps [0, 1]; anything else uses its finite
    min..max.
    """
    finite = data[np.isfinite(data)]
    if finite.size == 0:
        return 0.0, 1.0
    lo, hi = float(finite.min()), float(finite.max())
    if lo >= 0.0 and hi <= 1.0:
        return 0.0, 1.0
    return lo, hi


def resolve_clip_points(data: np.ndarray, options: StretchOptions) -> tuple[float, float]:
    """Black and white clip levels in data units."""
    black, white = options.black_point, options.white_point

    if options.kind == "zscale" and black is None and white is None:
        finite = _finite_sample(data)
        if finite.size:
            low, high = ZScaleInterval().get_limits(finite)
            return float(low), float(high)

    if options.kind == "percentile" and (black is None or white is None):
        finite = _finite_sample(data)
        if finite.size:
            low, high = np.percentile(finite, [options.percentile_low, options.percentile_high])
            return float(low), float(high)

    ref_lo, ref_hi = reference_range(data)
    span = ref_hi - ref_lo
    black = 0.0 if black is None else black
    white = 1.0 if white is None else white
    return ref_lo + black * span, ref_lo + white * span


def apply_mtf(data, m):
    """
    Apply MTF (Midtone Transfer Function).

    Reference formula: y = (m - 1) * x / ((2*m - 1) * x - m)
    """
    term1 = (m - 1.0) * data
    term2 = (2.0 * m - 1.0) * data - m
    with np.errstate(divide="ignore", invalid="ignore"):
        res = term1 / term2
    return np.nan_to_num(res, nan=0.0, posinf=1.0, neginf=0.0)


def curve_lut(preset: str) -> np.ndarray:
    """Monotone cubic tone curve sampled on [0, 1]."""
    xs, ys = zip(*CURVE_POINTS[preset])
    grid = np.linspace(0.0, 1.0, CURVE_LUT_SIZE)
    return np.clip(PchipInterpolator(xs, ys)(grid), 0.0, 1.0)


def _clip(work: np.ndarray) -> None:
    np.clip(work, 0.0, 1.0, out=work)


def _apply_function(work: np.ndarray, options: StretchOptions) -> None:
    kind = options.kind
    if kind == "sqrt":
        np.sqrt(work, out=work)
    elif kind == "log":
        work *= options.log_k
        np.log1p(work, out=work)
        work /= math.log1p(options.log_k)
    elif kind == "asinh":
        work *= options.asinh_k
        np.arcsinh(work, out=work)
        work /= math.asinh(options.asinh_k)
    # linear, zscale and percentile are linear once clipped


def _apply_tone(work: np.ndarray, options: StretchOptions) -> None:
    if options.gamma != 1.0:
        np.power(work, options.gamma, out=work)
        _clip(work)
    if options.midtone != 0.5:
        work[...] = apply_mtf(work, options.midtone)
        _clip(work)
    if options.brightness != 0.0:
        work += options.brightness
        _clip(work)
    if options.contrast != 1.0:
        work -= 0.5
        work *= options.contrast
        work += 0.5
        _clip(work)
    if options.curve_preset != "linear":
        lut = curve_lut(options.curve_preset)
        grid = np.linspace(0.0, 1.0, lut.size)
        work[...] = np.interp(work, grid, lut)
        _clip(work)
    if options.output_black != 0.0 or options.output_white != 1.0:
        work *= options.output_white - options.output_black
        work += options.output_black
        _clip(work)


def stretch(samples, dims: Optional[tuple[int, int]] = None,
            options: Optional[StretchOptions] = None) -> np.ndarray:
    """
    Map physical samples to display values in [0, 1].

    Args:
        samples: One frame, shaped (height, width) or flat with dims given
        dims: (width, height) when samples is flat
        options: Stretch options, clamped before use

    Returns:
        float32 array shaped (height, width), every value in [0, 1]
    """
    options = validate_stretch_options(options or StretchOptions())
    data = np.asarray(samples)
    if dims is not None:
        width, height = dims
        if data.size != width * height:
            raise ValueError(f"{data.size} samples do not match {width}x{height}")
        data = data.reshape(height, width)
    elif data.ndim != 2:
        raise ValueError(f"Expected a 2D frame, got shape {data.shape}")

    low, high = resolve_clip_points(data, options)

    work = np.array(data, dtype=np.float32, copy=True)
    finite = np.isfinite(work)
    scale = 1.0 / (high - low) if high > low else math.inf
    if not math.isfinite(scale):
        # Flat frame
        work[...] = 0.5
    else:
        work -= low
        work *= scale
    work[~finite] = 0.0
    del finite
    _clip(work)

    _apply_function(work, options)
    _clip(work)
    _apply_tone(work, options)
    return work
