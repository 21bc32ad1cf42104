"""
Output filename rules for converted images.

Rules:
    original  M42.fits      -> M42.png
    prefix    M42.fits      -> converted_M42.png
    suffix    M42.fits      -> M42_converted.png
    sequence  M42.fits      -> M42_0001.png
    template  "{object}_{filter}_{exptime}s_{seq}" -> M42_Ha_300s_001.png
"""

import re
from dataclasses import dataclass
from typing import Optional

from .models import ImageMetadata

NAMING_RULES = ("original", "prefix", "suffix", "sequence", "template")
DEFAULT_TEMPLATE = "{object}_{filter}_{exptime}s_{seq}"

# Multi-part extensions stripped as a whole
COMPOUND_EXTENSIONS = (".fits.gz", ".fit.gz", ".fts.gz")

TEMPLATE_TOKENS = {
    "object": "Target object",
    "date": "Observation date YYYY-MM-DD",
    "time": "Observation time HH-MM-SS",
    "filter": "Filter",
    "exptime": "Exposure time in seconds",
    "frameType": "Frame type",
    "telescope": "Telescope",
    "camera": "Camera or instrument",
    "gain": "Gain",
    "seq": "Sequence number, zero padded",
    "original": "Original filename without extension",
}

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_TOKEN_RE = re.compile(r"\{(\w+)\}")


@dataclass
class NamingOptions:
    """How output files are named."""

    rule: str = "original"
    prefix: str = "converted"
    suffix: str = "converted"
    sequence_start: int = 1
    template: str = DEFAULT_TEMPLATE
    seq_digits: int = 3  # Template {seq} padding


def sanitize(value: str) -> str:
    """Replace characters that are unsafe in filenames."""
    return _UNSAFE_CHARS.sub("_", str(value)).strip() or "_"


def split_extension(filename: str) -> tuple[str, str]:
    """Split "name.ext" (or "name.fits.gz") into base and extension."""
    lower = filename.lower()
    for ext in COMPOUND_EXTENSIONS:
        if lower.endswith(ext) and len(filename) > len(ext):
            return filename[:-len(ext)], filename[-len(ext):]
    dot = filename.rfind(".")
    if dot <= 0:
        return filename, ""
    return filename[:dot], filename[dot:]


def _format_number(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _date_parts(date_obs: Optional[str]) -> tuple[str, str]:
    if not date_obs:
        return "unknown-date", "unknown-time"
    date, _, time = str(date_obs).partition("T")
    time = re.sub(r"[Zz+].*$", "", time).split(".")[0].replace(":", "-")
    return date or "unknown-date", time or "unknown-time"


def template_values(metadata: Optional[ImageMetadata], original: str,
                    index: int, digits: int) -> dict:
    """Token values for a template, with fallbacks for missing metadata."""
    date, time = _date_parts(metadata.date_obs if metadata else None)
    camera = (metadata.instrument or metadata.detector) if metadata else None
    return {
        "object": sanitize(metadata.object if metadata and metadata.object else "unknown"),
        "date": sanitize(date),
        "time": sanitize(time),
        "filter": sanitize(metadata.filter if metadata and metadata.filter else "nofilter"),
        "exptime": _format_number(metadata.exptime) if metadata and metadata.exptime is not None else "0",
        "frameType": metadata.frame_type if metadata else "unknown",
        "telescope": sanitize(metadata.telescope) if metadata and metadata.telescope else "",
        "camera": sanitize(camera) if camera else "",
        "gain": _format_number(metadata.gain) if metadata else "",
        "seq": str(index).zfill(max(1, int(digits))),
        "original": original,
    }


def render_template(template: str, values: dict) -> str:
    """Substitute {token} placeholders; unknown tokens are left as written."""
    return _TOKEN_RE.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def output_filename(original_filename: str, extension: str,
                    naming: Optional[NamingOptions] = None, index: int = 0,
                    metadata: Optional[ImageMetadata] = None) -> str:
    """
    Output filename for one input file.

    Args:
        original_filename: Input filename (directories are ignored)
        extension: Target extension without the dot, e.g. "png" or "fits.gz"
        naming: Naming rule; defaults to "original"
        index: Zero-based position of the file in its batch
        metadata: Source metadata, used by the template rule
    """
    naming = naming or NamingOptions()
    if naming.rule not in NAMING_RULES:
        raise ValueError(f"Unknown naming rule: {naming.rule}. Available: {list(NAMING_RULES)}")

    base, _ = split_extension(original_filename.replace("\\", "/").rsplit("/", 1)[-1])
    base = sanitize(base)
    seq = naming.sequence_start + index

    if naming.rule == "prefix":
        stem = f"{sanitize(naming.prefix)}_{base}"
    elif naming.rule == "suffix":
        stem = f"{base}_{sanitize(naming.suffix)}"
    elif naming.rule == "sequence":
        stem = f"{base}_{str(seq).zfill(4)}"
    elif naming.rule == "template":
        values = template_values(metadata, base, seq, naming.seq_digits)
        stem = sanitize(render_template(naming.template, values))
    else:
        stem = base
    return f"{stem}.{extension}"
