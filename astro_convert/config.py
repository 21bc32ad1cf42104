"""
Centralized export options for image conversion.

All configurable values live in the dataclasses below. Users can override
ANY value via job JSON files, settings.json or command-line flags.

Override precedence: DEFAULTS <- settings.json <- job.json options <- CLI
"""

from dataclasses import asdict, dataclass, field, fields, is_dataclass, replace
from typing import Optional

FORMATS = ("fits", "png", "jpeg", "webp", "tiff", "bmp")
LOSSY_FORMATS = ("jpeg", "webp")

STRETCH_KINDS = ("linear", "sqrt", "log", "asinh", "zscale", "percentile")
CURVE_PRESETS = ("linear", "sCurve", "brighten", "darken", "highContrast")

FITS_MODES = ("scientific", "rendered")
FITS_COMPRESSIONS = ("none", "gzip")
FITS_BITPIX = (8, 16, 32, -32, -64)
FITS_COLOR_LAYOUTS = ("mono2d", "rgbCube3d", "monoCube3d")

TIFF_COMPRESSIONS = ("lzw", "deflate", "none")
TIFF_MULTIPAGE = ("preserve", "firstFrame")

# Sample widths each format can store
SUPPORTED_BIT_DEPTHS = {
    "tiff": (8, 16, 32),
    "png": (8, 16),
    "fits": (8, 16, 32),
}


@dataclass
class StretchOptions:
    """Stretch and tone parameters, applied in field order after the stretch."""

    kind: str = "linear"

    # Fractions of the reference range; None means "not pinned"
    # (0/1 for manual kinds, automatic for zscale/percentile)
    black_point: Optional[float] = None
    white_point: Optional[float] = None

    gamma: float = 1.0  # y = x ** gamma
    midtone: float = 0.5  # MTF midtone balance, 0.5 is identity
    brightness: float = 0.0  # Additive, -1..1
    contrast: float = 1.0  # Multiplicative around 0.5
    curve_preset: str = "linear"
    output_black: float = 0.0
    output_white: float = 1.0

    # Automatic clip points for the percentile stretch
    percentile_low: float = 0.1
    percentile_high: float = 99.9

    # Compression constants for log/asinh
    log_k: float = 1000.0
    asinh_k: float = 10.0


@dataclass
class FitsTargetOptions:
    """FITS output parameters."""

    mode: str = "scientific"  # "scientific" keeps physical samples
    compression: str = "none"  # "none" or "gzip"
    bitpix: int = -32
    color_layout: str = "mono2d"  # "mono2d", "rgbCube3d", "monoCube3d"
    preserve_original_header: bool = True
    preserve_wcs: bool = True


@dataclass
class TiffTargetOptions:
    """TIFF output parameters."""

    compression: str = "none"  # "lzw", "deflate" or "none"
    multipage: str = "preserve"  # "preserve" or "firstFrame"


@dataclass
class RenderOptions:
    """Decorations composited onto rendered exports."""

    include_annotations: bool = False
    include_watermark: bool = False
    watermark_text: str = ""


@dataclass
class ExportOptions:
    """
    All export options. User can override any field.

    To add a new option: add a field here with a default value.
    It will automatically be available for override in job files.
    """

    format: str = "png"
    quality: int = 90  # 1-100, JPEG/WebP only
    bit_depth: int = 8  # 8, 16 or 32 where the format allows it
    dpi: int = 72
    colormap: str = "grayscale"
    frame: int = 0  # Frame rendered for single-image targets
    overwrite: bool = False

    stretch: StretchOptions = field(default_factory=StretchOptions)
    fits: FitsTargetOptions = field(default_factory=FitsTargetOptions)
    tiff: TiffTargetOptions = field(default_factory=TiffTargetOptions)
    render: RenderOptions = field(default_factory=RenderOptions)


# Global defaults instance
DEFAULTS = ExportOptions()


def get_valid_options(options=DEFAULTS) -> set[str]:
    """Return set of valid option names (nested sections use dotted names)."""
    names = set()
    for f in fields(options):
        value = getattr(options, f.name)
        if is_dataclass(value):
            names.update(f"{f.name}.{sub}" for sub in get_valid_options(value))
        else:
            names.add(f.name)
    return names


def _apply_overrides(base, overrides: dict, prefix: str = ""):
    valid = {f.name for f in fields(base)}
    invalid = set(overrides.keys()) - valid
    if invalid:
        raise ValueError(
            f"Unknown config options: {sorted(prefix + k for k in invalid)}"
        )

    changes = {}
    for key, value in overrides.items():
        current = getattr(base, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ValueError(f"Option {prefix}{key} expects a mapping")
            changes[key] = _apply_overrides(current, value, f"{prefix}{key}.")
        else:
            changes[key] = value
    return replace(base, **changes)


def with_overrides(overrides: dict, base: ExportOptions = DEFAULTS) -> ExportOptions:
    """
    Create ExportOptions with overrides applied.

    Nested sections (stretch, fits, tiff, render) take nested dicts.
    Raises ValueError for unknown keys.
    """
    if not overrides:
        return replace(base)
    return _apply_overrides(base, overrides)


def merge_overrides(*override_dicts: dict) -> dict:
    """
    Merge multiple override dicts (later dicts take precedence).

    Nested sections are merged key by key, so a job file can change
    stretch.kind without discarding stretch.gamma from settings.json.
    """
    result: dict = {}
    for d in override_dicts:
        if not d:
            continue
        for key, value in d.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_overrides(result[key], value)
            else:
                result[key] = value
    return result


def options_to_dict(options: ExportOptions) -> dict:
    """Convert ExportOptions to dict (for serialization)."""
    return asdict(options)


# Format helpers


def get_supported_bit_depths(fmt: str) -> tuple[int, ...]:
    """Bit depths a format can store."""
    return SUPPORTED_BIT_DEPTHS.get(fmt, (8,))


def supports_quality(fmt: str) -> bool:
    """Whether quality affects the encoder for this format."""
    return fmt in LOSSY_FORMATS


def default_options_for_format(fmt: str) -> dict:
    """Overrides that give sensible defaults for a target format."""
    if fmt not in FORMATS:
        raise ValueError(f"Unknown format: {fmt}")
    quality = {"jpeg": 85, "webp": 80}.get(fmt, 100)
    bit_depth = {"tiff": 16, "fits": 32}.get(fmt, 8)
    return {"format": fmt, "quality": quality, "bit_depth": bit_depth, "dpi": 72}


# Built-in presets
PRESETS = {
    "web": {
        "format": "jpeg",
        "quality": 85,
        "bit_depth": 8,
        "dpi": 72,
        "stretch": {"kind": "asinh"},
    },
    "print": {
        "format": "png",
        "quality": 100,
        "bit_depth": 8,
        "dpi": 300,
        "stretch": {"kind": "asinh"},
        "render": {"include_annotations": True},
    },
    "astro": {
        "format": "tiff",
        "quality": 100,
        "bit_depth": 16,
        "dpi": 72,
        "stretch": {"kind": "linear"},
    },
}


def preset_options(name: str, overrides: Optional[dict] = None) -> ExportOptions:
    """ExportOptions for a built-in preset, with optional overrides on top."""
    if name not in PRESETS:
        raise ValueError(f"Unknown preset: {name}. Available: {sorted(PRESETS)}")
    return with_overrides(merge_overrides(PRESETS[name], overrides or {}))


def validate_options(options: ExportOptions) -> None:
    """Raise ValueError for enumerated fields holding unknown values."""
    checks = [
        ("format", options.format, FORMATS),
        ("stretch.kind", options.stretch.kind, STRETCH_KINDS),
        ("stretch.curve_preset", options.stretch.curve_preset, CURVE_PRESETS),
        ("fits.mode", options.fits.mode, FITS_MODES),
        ("fits.compression", options.fits.compression, FITS_COMPRESSIONS),
        ("fits.bitpix", options.fits.bitpix, FITS_BITPIX),
        ("fits.color_layout", options.fits.color_layout, FITS_COLOR_LAYOUTS),
        ("tiff.compression", options.tiff.compression, TIFF_COMPRESSIONS),
        ("tiff.multipage", options.tiff.multipage, TIFF_MULTIPAGE),
    ]
    for name, value, allowed in checks:
        if value not in allowed:
            raise ValueError(f"Invalid {name}: {value!r}. Expected one of {list(allowed)}")
