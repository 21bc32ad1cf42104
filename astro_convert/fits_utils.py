"""
FITS header utilities: keyword aliases, metadata summary and frame typing.
"""

import logging
import re
import warnings
from pathlib import Path
from typing import Optional

from astropy.io import fits
from astropy.wcs import WCS, FITSFixedWarning

from .models import HeaderKeyword

# Common FITS keyword variations
EXPOSURE_KEYWORDS = ["EXPTIME", "EXPOSURE", "EXP_TIME", "EXPOTIME"]
TEMPERATURE_KEYWORDS = ["CCD-TEMP", "CCD_TEMP", "CCDTEMP", "TEMP", "SENSOR-TEMP"]
FILTER_KEYWORDS = ["FILTER", "FILTER1", "FILTNAM", "FWHEEL"]
GAIN_KEYWORDS = ["GAIN", "CCDGAIN", "EGAIN"]
OBJECT_KEYWORDS = ["OBJECT", "OBJNAME", "TARGET"]
DATE_KEYWORDS = ["DATE-OBS", "DATE_OBS", "DATE"]
INSTRUMENT_KEYWORDS = ["INSTRUME", "CAMERA"]
TELESCOPE_KEYWORDS = ["TELESCOP", "TELESCOPE"]
DETECTOR_KEYWORDS = ["DETECTOR", "CCDNAME"]
RA_KEYWORDS = ["RA", "OBJCTRA", "CRVAL1"]
DEC_KEYWORDS = ["DEC", "OBJCTDEC", "CRVAL2"]
AIRMASS_KEYWORDS = ["AIRMASS", "SECZ"]
FRAME_TYPE_KEYWORDS = ["IMAGETYP", "FRAME", "FRAMETYP", "IMAGETYPE"]

# Keywords describing the world coordinate system of an image
WCS_KEY_PATTERNS = [
    re.compile(r"^(CRVAL|CRPIX|CTYPE|CDELT|CUNIT|CROTA)\d+$"),
    re.compile(r"^(CD|PC)\d+_\d+$"),
    re.compile(r"^(PV|PS)\d+_\d+$"),
    re.compile(r"^(EQUINOX|EPOCH|RADESYS|RADECSYS|LONPOLE|LATPOLE|WCSAXES)$"),
    re.compile(r"^(A|B|AP|BP)_(\d+_\d+|ORDER|DMAX)$"),
]

# IMAGETYP / FRAME header values seen in common capture software
HEADER_FRAME_TYPES = {
    "light": "light",
    "light frame": "light",
    "master light": "light",
    "science": "light",
    "science frame": "light",
    "object": "light",
    "object frame": "light",
    "dark": "dark",
    "dark frame": "dark",
    "master dark": "dark",
    "flat": "flat",
    "flat frame": "flat",
    "master flat": "flat",
    "flat field": "flat",
    "master flat field": "flat",
    "skyflat": "flat",
    "sky flat": "flat",
    "domeflat": "flat",
    "dome flat": "flat",
    "twilight flat": "flat",
    "bias": "bias",
    "bias frame": "bias",
    "master bias": "bias",
    "offset": "bias",
    "zero": "bias",
    "zero frame": "bias",
    "darkflat": "darkflat",
    "dark flat": "darkflat",
    "flatdark": "darkflat",
    "flat dark": "darkflat",
    "dark flat frame": "darkflat",
    "flat dark frame": "darkflat",
    "master dark flat": "darkflat",
    "master flat dark": "darkflat",
}

# Filename patterns, highest priority first
_SEP = r"(?:^|[\s_\-./])"
_END = r"(?:[\s_\-./]|$)"
FILENAME_FRAME_PATTERNS = [
    (re.compile(rf"{_SEP}(?:darkflat|flatdark){_END}", re.I), "darkflat"),
    (re.compile(r"(?:master[\s_.-]*)?(?:dark[\s_.-]*flat|flat[\s_.-]*dark)", re.I), "darkflat"),
    (re.compile(rf"{_SEP}bias{_END}", re.I), "bias"),
    (re.compile(rf"{_SEP}offset{_END}", re.I), "bias"),
    (re.compile(rf"{_SEP}zero{_END}", re.I), "bias"),
    (re.compile(rf"{_SEP}flat{_END}", re.I), "flat"),
    (re.compile(r"(?:sky|dome|twilight)[\s_.-]*flat", re.I), "flat"),
    (re.compile(rf"{_SEP}dark{_END}", re.I), "dark"),
    (re.compile(rf"{_SEP}light{_END}", re.I), "light"),
    (re.compile(rf"{_SEP}science{_END}", re.I), "light"),
    (re.compile(rf"{_SEP}object{_END}", re.I), "light"),
]


def _get_header_value(header, keywords: list[str], default=None):
    """Try multiple keywords and return first found value."""
    for kw in keywords:
        if kw in header:
            return header[kw]
    return default


def keyword_dict(keywords: list[HeaderKeyword]) -> dict:
    """First value of every key; commentary cards are left out."""
    values = {}
    for kw in keywords:
        if kw.key in ("COMMENT", "HISTORY", ""):
            continue
        values.setdefault(kw.key.upper(), kw.value)
    return values


def to_astropy_header(keywords: list[HeaderKeyword]) -> fits.Header:
    """Build an astropy Header, skipping cards astropy refuses."""
    header = fits.Header()
    for kw in keywords:
        try:
            if kw.key in ("COMMENT", "HISTORY", ""):
                header.append((kw.key, str(kw.value or "")), end=True)
            else:
                header.append((kw.key, kw.value, kw.comment or ""), end=True)
        except (ValueError, KeyError) as e:
            logging.debug(f"Skipping header card {kw.key}: {e}")
    return header


def is_wcs_key(key: str) -> bool:
    return any(p.match(key.upper()) for p in WCS_KEY_PATTERNS)


def _as_float(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _sexagesimal_to_degrees(value, hours: bool) -> Optional[float]:
    """Accept decimal degrees, or sexagesimal strings (hours for RA)."""
    number = _as_float(value)
    if number is not None:
        return number
    text = _as_text(value)
    if text is None:
        return None
    parts = re.split(r"[\s:hdms]+", text.strip().lower())
    parts = [p for p in parts if p]
    try:
        numbers = [float(p) for p in parts[:3]]
    except ValueError:
        return None
    if not numbers:
        return None
    sign = -1.0 if text.strip().startswith("-") else 1.0
    numbers[0] = abs(numbers[0])
    while len(numbers) < 3:
        numbers.append(0.0)
    degrees = numbers[0] + numbers[1] / 60 + numbers[2] / 3600
    return sign * degrees * (15.0 if hours else 1.0)


def wcs_center(keywords: list[HeaderKeyword], width: int, height: int):
    """(ra, dec) of the image center in degrees, or None without celestial WCS."""
    values = keyword_dict(keywords)
    if "CTYPE1" not in values or "CTYPE2" not in values:
        return None
    header = to_astropy_header([kw for kw in keywords if is_wcs_key(kw.key)])
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", FITSFixedWarning)
            wcs = WCS(header, naxis=2)
            if not wcs.has_celestial:
                return None
            ra, dec = wcs.celestial.pixel_to_world_values((width - 1) / 2, (height - 1) / 2)
    except (ValueError, KeyError, MemoryError) as e:
        logging.debug(f"WCS could not be evaluated: {e}")
        return None
    return float(ra), float(dec)


def classify_frame(keywords: list[HeaderKeyword], filename: Optional[str] = None) -> tuple[str, str]:
    """
    Classify a frame as light/dark/flat/bias/darkflat.

    Returns (frame_type, source) where source is "header", "filename"
    or "fallback".
    """
    values = keyword_dict(keywords)
    raw = _get_header_value(values, FRAME_TYPE_KEYWORDS)
    if raw is not None:
        normalized = re.sub(r"\s+", " ", re.sub(r"[_-]+", " ", str(raw).strip().lower()))
        if normalized in HEADER_FRAME_TYPES:
            return HEADER_FRAME_TYPES[normalized], "header"

    if filename:
        stem = Path(filename).name
        for pattern, frame_type in FILENAME_FRAME_PATTERNS:
            if pattern.search(stem):
                return frame_type, "filename"

    return "unknown", "fallback"


def extract_metadata(keywords: list[HeaderKeyword], width: int, height: int,
                     filename: Optional[str] = None) -> dict:
    """Summary fields for ImageMetadata pulled from header keywords."""
    values = keyword_dict(keywords)
    frame_type, frame_type_source = classify_frame(keywords, filename)
    center = wcs_center(keywords, width, height)

    ra_key = _get_header_value(values, RA_KEYWORDS)
    dec_key = _get_header_value(values, DEC_KEYWORDS)

    return {
        "frame_type": frame_type,
        "frame_type_source": frame_type_source,
        "object": _as_text(_get_header_value(values, OBJECT_KEYWORDS)),
        "date_obs": _as_text(_get_header_value(values, DATE_KEYWORDS)),
        "exptime": _as_float(_get_header_value(values, EXPOSURE_KEYWORDS)),
        "filter": _as_text(_get_header_value(values, FILTER_KEYWORDS)),
        "instrument": _as_text(_get_header_value(values, INSTRUMENT_KEYWORDS)),
        "telescope": _as_text(_get_header_value(values, TELESCOPE_KEYWORDS)),
        "detector": _as_text(_get_header_value(values, DETECTOR_KEYWORDS)),
        "gain": _as_float(_get_header_value(values, GAIN_KEYWORDS)),
        "ccd_temp": _as_float(_get_header_value(values, TEMPERATURE_KEYWORDS)),
        "ra": _sexagesimal_to_degrees(ra_key, hours=True),
        "dec": _sexagesimal_to_degrees(dec_key, hours=False),
        "airmass": _as_float(_get_header_value(values, AIRMASS_KEYWORDS)),
        "has_wcs": center is not None,
        "wcs_center": center,
    }
