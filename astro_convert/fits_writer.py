"""
FITS output: header assembly, integer scaling and gzip wrapping.

Pixel arrays are written through astropy. Preserved header cards are
copied in order with structural keys rebuilt from the data.
"""

import gzip
import io
import logging
import re
import warnings
from datetime import datetime, timezone
from typing import Optional

import numpy as np
from astropy.io import fits
from astropy.io.fits.verify import VerifyError, VerifyWarning

from .detect import GZIP_MAGIC
from .fits_utils import is_wcs_key
from .models import HeaderKeyword, ImageMetadata

# Suppress noisy astropy FITS warnings (card length, HIERARCH keywords, etc.)
warnings.filterwarnings("ignore", category=VerifyWarning)

# Keys derived from the written data, never copied from the source
STRUCTURAL_KEY_PATTERNS = [
    re.compile(p) for p in (
        r"^SIMPLE$", r"^BITPIX$", r"^NAXIS\d*$", r"^EXTEND$", r"^XTENSION$",
        r"^BSCALE$", r"^BZERO$", r"^BLANK$", r"^PCOUNT$", r"^GCOUNT$",
        r"^END$", r"^CHECKSUM$", r"^DATASUM$", r"^GROUPS$",
        # Tile-compression bookkeeping
        r"^Z(IMAGE|SIMPLE|EXTEND|BITPIX|CMPTYPE|QUANTIZ|DITHER0|BLANK|SCALE|ZERO|HECKSUM|DATASUM)$",
        r"^Z(NAXIS|TILE|NAME|VAL)\d*$",
        r"^T(FIELDS|TYPE\d+|FORM\d+|UNIT\d+)$",
    )
]

INTEGER_STORAGE = {
    8: ("uint8", 0, 255),
    16: ("int16", -32768, 32767),
    32: ("int32", -2147483648, 2147483647),
}
FLOAT_TYPES = {-32: np.float32, -64: np.float64}

# ImageMetadata field -> (keyword, comment)
METADATA_CARDS = [
    ("date_obs", "DATE-OBS", "Observation date/time"),
    ("object", "OBJECT", "Target object"),
    ("exptime", "EXPTIME", "Exposure time in seconds"),
    ("filter", "FILTER", "Filter name"),
    ("instrument", "INSTRUME", "Instrument"),
    ("telescope", "TELESCOP", "Telescope"),
    ("detector", "DETECTOR", "Detector model"),
    ("gain", "GAIN", "Detector gain"),
    ("ccd_temp", "CCD-TEMP", "Sensor temperature"),
    ("ra", "RA", "Right ascension"),
    ("dec", "DEC", "Declination"),
    ("airmass", "AIRMASS", "Airmass"),
]


def is_structural_key(key: str) -> bool:
    key = key.strip().upper()
    return any(p.match(key) for p in STRUCTURAL_KEY_PATTERNS)


def integer_scaling(data: np.ndarray, bitpix: int) -> tuple[float, float]:
    """
    BSCALE/BZERO for storing physical values as integers.

    Integral data inside the storage range is stored as is; anything else
    is mapped linearly over the full storage range.
    """
    _, smin, smax = INTEGER_STORAGE[bitpix]
    finite = data[np.isfinite(data)]
    if finite.size == 0:
        return 1.0, 0.0
    lo, hi = float(finite.min()), float(finite.max())
    if lo >= smin and hi <= smax and np.all(finite == np.round(finite)):
        return 1.0, 0.0
    span = hi - lo
    if not np.isfinite(span) or span <= 0:
        return 1.0, lo - smin
    bscale = span / (smax - smin)
    bzero = lo - smin * bscale
    return bscale, bzero


def build_hdu(data: np.ndarray, bitpix: int) -> fits.PrimaryHDU:
    """PrimaryHDU holding data stored with the requested BITPIX."""
    if bitpix in FLOAT_TYPES:
        return fits.PrimaryHDU(np.ascontiguousarray(data, dtype=FLOAT_TYPES[bitpix]))
    if bitpix not in INTEGER_STORAGE:
        raise ValueError(f"Unsupported BITPIX: {bitpix}")

    type_name, smin, smax = INTEGER_STORAGE[bitpix]
    bscale, bzero = integer_scaling(data, bitpix)
    physical = np.array(data, dtype=np.float64, copy=True)
    physical[~np.isfinite(physical)] = 0.0
    # Keep rounding inside the storage range
    np.clip(physical, smin * bscale + bzero, smax * bscale + bzero, out=physical)

    hdu = fits.PrimaryHDU(physical)
    hdu.scale(type_name, bscale=bscale, bzero=bzero)
    return hdu


def history_line(source_format: str, target_format: str, mode: str,
                 timestamp: Optional[str] = None) -> str:
    stamp = timestamp or datetime.now(timezone.utc).isoformat(timespec="seconds")
    return f"Converted {source_format} -> {target_format}; mode={mode}; timestamp={stamp}"


def _append(header: fits.Header, card: tuple, warnings_out: list[str]) -> None:
    try:
        header.append(card, end=True)
    except (ValueError, KeyError, VerifyError) as e:
        message = f"Could not set keyword {card[0]}: {e}"
        logging.debug(message)
        warnings_out.append(message)


def apply_header(header: fits.Header, *,
                 keywords: Optional[list[HeaderKeyword]] = None,
                 comments: Optional[list[str]] = None,
                 history: Optional[list[str]] = None,
                 metadata: Optional[ImageMetadata] = None,
                 preserve_header: bool = True,
                 preserve_wcs: bool = True,
                 provenance: Optional[str] = None) -> list[str]:
    """
    Append preserved, metadata and provenance cards to a header.

    The first occurrence of a non-commentary key wins. Returns warnings for
    cards that could not be written.
    """
    warnings_out: list[str] = []
    seen = {card.keyword for card in header.cards}

    if preserve_header:
        for kw in keywords or []:
            key = kw.key.strip().upper()
            if not key or is_structural_key(key):
                continue
            if not preserve_wcs and is_wcs_key(key):
                continue
            if key in ("COMMENT", "HISTORY"):
                _append(header, (key, "" if kw.value is None else str(kw.value)), warnings_out)
                continue
            if key in seen:
                continue
            seen.add(key)
            _append(header, (kw.key.strip(), kw.value, kw.comment or ""), warnings_out)

    if metadata is not None:
        for attr, key, comment in METADATA_CARDS:
            value = getattr(metadata, attr, None)
            if value is None or value == "" or key in seen:
                continue
            seen.add(key)
            _append(header, (key, value, comment), warnings_out)

    for text in comments or []:
        if text:
            _append(header, ("COMMENT", text), warnings_out)
    for text in history or []:
        if text:
            _append(header, ("HISTORY", text), warnings_out)
    if provenance:
        _append(header, ("HISTORY", provenance), warnings_out)
    return warnings_out


def gzip_bytes(payload: bytes) -> bytes:
    return gzip.compress(payload, mtime=0)


def normalize_compression(payload: bytes, compression: str) -> bytes:
    """Gzip or un-gzip a FITS stream to match the requested compression."""
    is_gzipped = payload[:2] == GZIP_MAGIC
    if compression == "gzip":
        return payload if is_gzipped else gzip_bytes(payload)
    return gzip.decompress(payload) if is_gzipped else payload


def write_fits(data: np.ndarray, bitpix: int = -32, *,
               keywords: Optional[list[HeaderKeyword]] = None,
               comments: Optional[list[str]] = None,
               history: Optional[list[str]] = None,
               metadata: Optional[ImageMetadata] = None,
               preserve_header: bool = True,
               preserve_wcs: bool = True,
               mode: str = "scientific",
               source_format: str = "unknown",
               compression: str = "none",
               timestamp: Optional[str] = None) -> tuple[bytes, list[str]]:
    """
    Serialize a 2D image or 3D cube as a single-HDU FITS file.

    Args:
        data: (height, width) or (depth, height, width) physical values
        bitpix: 8, 16, 32, -32 or -64
        compression: "none" or "gzip" (whole-file)

    Returns:
        (encoded bytes, warnings)
    """
    data = np.asarray(data)
    if data.ndim not in (2, 3) or 0 in data.shape:
        raise ValueError(f"FITS data must be a non-empty 2D image or 3D cube, got {data.shape}")

    hdu = build_hdu(data, bitpix)
    target = "fits.gz" if compression == "gzip" else "fits"
    warnings_out = apply_header(
        hdu.header,
        keywords=keywords,
        comments=comments,
        history=history,
        metadata=metadata,
        preserve_header=preserve_header,
        preserve_wcs=preserve_wcs,
        provenance=history_line(source_format, target, mode, timestamp),
    )

    buffer = io.BytesIO()
    hdu.writeto(buffer, output_verify="silentfix")
    payload = buffer.getvalue()
    logging.debug(f"Wrote FITS {data.shape} BITPIX={bitpix} ({len(payload)} bytes)")
    if compression == "gzip":
        payload = gzip_bytes(payload)
    return payload, warnings_out
