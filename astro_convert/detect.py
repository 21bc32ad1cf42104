"""
Container detection from byte signatures and filename extensions.

Signatures are checked first, in priority order; the extension is only
consulted when no signature matches.
"""

import gzip
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .errors import UnsupportedFormat

# Bytes of the payload handed to the predicates; gzip needs room for its
# Huffman tables before the first FITS card comes out
PREFIX_SIZE = 4096

GZIP_MAGIC = b"\x1f\x8b"
FITS_MAGIC = b"SIMPLE  ="

# Extension -> (source type, format)
EXTENSIONS = {
    ".fits": ("fits", "fits"),
    ".fit": ("fits", "fits"),
    ".fts": ("fits", "fits"),
    ".fz": ("fits", "fits"),
    ".fits.gz": ("fits", "fits"),
    ".fit.gz": ("fits", "fits"),
    ".fts.gz": ("fits", "fits"),
    ".png": ("raster", "png"),
    ".jpg": ("raster", "jpeg"),
    ".jpeg": ("raster", "jpeg"),
    ".webp": ("raster", "webp"),
    ".tif": ("raster", "tiff"),
    ".tiff": ("raster", "tiff"),
    ".bmp": ("raster", "bmp"),
}


@dataclass(frozen=True)
class Fits:
    """FITS stream, possibly gzip wrapped."""

    compressed: bool = False

    source_type = "fits"
    kind = "fits"


@dataclass(frozen=True)
class Raster:
    """Conventional raster container."""

    kind: str  # "png", "jpeg", "webp", "tiff", "bmp"

    source_type = "raster"


def _gunzip_prefix(prefix: bytes) -> bytes:
    """Decompress just enough of a gzip stream to inspect its first card."""
    decompressor = zlib.decompressobj(zlib.MAX_WBITS | 16)
    try:
        return decompressor.decompress(prefix, 80)
    except zlib.error:
        return b""


def _is_gzip_fits(prefix: bytes):
    if prefix.startswith(GZIP_MAGIC) and _gunzip_prefix(prefix).startswith(FITS_MAGIC):
        return Fits(compressed=True)
    return None


def _is_fits(prefix: bytes):
    return Fits() if prefix.startswith(FITS_MAGIC) else None


def _is_png(prefix: bytes):
    return Raster("png") if prefix.startswith(b"\x89PNG\r\n\x1a\n") else None


def _is_jpeg(prefix: bytes):
    return Raster("jpeg") if prefix.startswith(b"\xff\xd8\xff") else None


def _is_webp(prefix: bytes):
    if prefix[:4] == b"RIFF" and prefix[8:12] == b"WEBP":
        return Raster("webp")
    return None


def _is_tiff(prefix: bytes):
    if prefix[:4] in (b"II*\x00", b"MM\x00*", b"II+\x00", b"MM\x00+"):
        return Raster("tiff")
    return None


def _is_bmp(prefix: bytes):
    return Raster("bmp") if prefix[:2] == b"BM" and len(prefix) >= 14 else None


SIGNATURES: tuple[Callable[[bytes], Optional[object]], ...] = (
    _is_gzip_fits,
    _is_fits,
    _is_png,
    _is_jpeg,
    _is_webp,
    _is_tiff,
    _is_bmp,
)


def extension_of(filename: str) -> str:
    """Lower-case extension, including double extensions like .fits.gz."""
    name = Path(filename).name.lower()
    for ext in sorted(EXTENSIONS, key=len, reverse=True):
        if name.endswith(ext):
            return ext
    return Path(name).suffix


def is_supported_filename(filename: str) -> bool:
    """Check whether an extension names a readable container."""
    return extension_of(filename) in EXTENSIONS


def format_from_extension(filename: str) -> Optional[object]:
    entry = EXTENSIONS.get(extension_of(filename))
    if entry is None:
        return None
    source_type, fmt = entry
    if source_type == "fits":
        return Fits(compressed=extension_of(filename).endswith(".gz"))
    return Raster(fmt)


def detect_format(payload: bytes, filename: Optional[str] = None):
    """
    Identify the container of a payload.

    Returns Fits(...) or Raster(kind). Raises UnsupportedFormat when neither
    the signature nor the extension is recognized.
    """
    prefix = bytes(payload[:PREFIX_SIZE])
    for predicate in SIGNATURES:
        detected = predicate(prefix)
        if detected is not None:
            return detected

    if filename and prefix:
        # No signature matched, fall back to the extension
        detected = format_from_extension(filename)
        if detected is not None:
            return detected

    label = f" for {filename}" if filename else ""
    raise UnsupportedFormat(f"Unrecognized image container{label}")


def decompress_if_gzip(payload: bytes) -> bytes:
    """Return the decompressed payload for gzip streams, else the payload."""
    if payload[:2] == GZIP_MAGIC:
        return gzip.decompress(payload)
    return payload
