"""Shared fixtures: small in-memory FITS, PNG and TIFF payloads."""

import io

import numpy as np
import pytest
import tifffile
from astropy.io import fits
from PIL import Image


def fits_bytes(data, header_cards=None, extra_hdus=None) -> bytes:
    """Serialize data as a primary HDU with optional cards and extensions."""
    primary = fits.PrimaryHDU(data)
    for key, value in header_cards or []:
        primary.header.append((key, value), end=True)
    hdul = fits.HDUList([primary] + list(extra_hdus or []))
    buffer = io.BytesIO()
    hdul.writeto(buffer)
    return buffer.getvalue()


def png_bytes(array) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(np.asarray(array)).save(buffer, format="PNG")
    return buffer.getvalue()


def tiff_bytes(pages) -> bytes:
    buffer = io.BytesIO()
    with tifffile.TiffWriter(buffer) as tif:
        for page in pages:
            tif.write(np.asarray(page), photometric="minisblack")
    return buffer.getvalue()


@pytest.fixture
def gradient():
    """16x24 float32 ramp from 0 to 1000."""
    return np.linspace(0.0, 1000.0, 16 * 24, dtype=np.float32).reshape(16, 24)


@pytest.fixture
def gradient_fits(gradient):
    cards = [
        ("OBJECT", "M42"),
        ("FILTER", "Ha"),
        ("EXPTIME", 300.0),
        ("DATE-OBS", "2024-01-15T22:30:05"),
        ("IMAGETYP", "Light Frame"),
    ]
    return fits_bytes(gradient, cards)


@pytest.fixture
def wcs_fits(gradient):
    cards = [
        ("OBJECT", "M31"),
        ("CTYPE1", "RA---TAN"),
        ("CTYPE2", "DEC--TAN"),
        ("CRVAL1", 10.68),
        ("CRVAL2", 41.27),
        ("CRPIX1", 12.5),
        ("CRPIX2", 8.5),
        ("CDELT1", -0.001),
        ("CDELT2", 0.001),
    ]
    return fits_bytes(gradient, cards)


@pytest.fixture
def gray_png():
    return png_bytes(np.tile(np.arange(0, 256, 16, dtype=np.uint8), (8, 1)))


@pytest.fixture
def color_png():
    rgb = np.zeros((8, 8, 3), dtype=np.uint8)
    rgb[..., 0] = 200
    rgb[..., 2] = 50
    return png_bytes(rgb)
