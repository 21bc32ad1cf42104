"""
Raster decoding: Pillow for PNG/JPEG/WebP/BMP, tifffile for TIFF (Pillow for
LZW pages).

Every decoded page yields an 8-bit RGBA preview plus its native samples, from
which the scientific (float) view is derived independently.
"""

import io
import logging
from typing import Iterator

import numpy as np
import tifffile
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import CorruptData
from .models import (
    SAMPLE_FLOAT,
    SAMPLE_SIGNED,
    SAMPLE_UNSIGNED,
    HeaderKeyword,
    RasterFrame,
)

# Rec.709 luma coefficients
LUMA_WEIGHTS = np.array([0.2126, 0.7152, 0.0722], dtype=np.float32)

EXIF_ORIENTATION_TAG = 0x0112

# Pillow modes decoded through a conversion first
_CONVERT_MODES = {
    "1": "L",
    "P": "RGBA",
    "PA": "RGBA",
    "CMYK": "RGB",
    "YCbCr": "RGB",
    "LAB": "RGB",
    "HSV": "RGB",
    "RGBa": "RGBA",
    "La": "LA",
    "RGBX": "RGB",
}


def sample_format_of(dtype) -> str:
    kind = np.dtype(dtype).kind
    if kind == "f":
        return SAMPLE_FLOAT
    if kind == "i":
        return SAMPLE_SIGNED
    return SAMPLE_UNSIGNED


def bit_depth_of(dtype) -> int:
    dtype = np.dtype(dtype)
    return 8 if dtype == np.bool_ else dtype.itemsize * 8


def _to_uint8(channel: np.ndarray) -> np.ndarray:
    """Scale one array of native samples down to 0..255."""
    if channel.dtype == np.uint8:
        return channel
    if channel.dtype == np.bool_:
        return channel.astype(np.uint8) * 255
    if channel.dtype.kind == "u":
        shift = channel.dtype.itemsize * 8 - 8
        return (channel >> shift).astype(np.uint8)
    if channel.dtype.kind == "i":
        info = np.iinfo(channel.dtype)
        shift = channel.dtype.itemsize * 8 - 8
        unsigned = channel.astype(np.int64) - info.min
        return (unsigned >> shift).astype(np.uint8)

    values = np.nan_to_num(channel.astype(np.float32), nan=0.0, posinf=0.0, neginf=0.0)
    lo, hi = float(values.min(initial=0.0)), float(values.max(initial=0.0))
    if lo < 0.0 or hi > 1.0:
        # Not normalized, stretch the data range linearly
        span = hi - lo
        values = (values - lo) / span if span > 0 else np.zeros_like(values)
    return np.round(np.clip(values, 0.0, 1.0) * 255.0).astype(np.uint8)


def to_rgba8(pixels: np.ndarray) -> np.ndarray:
    """8-bit RGBA from mono, mono+alpha, RGB or RGBA native samples."""
    if pixels.ndim == 2:
        pixels = pixels[:, :, np.newaxis]
    height, width, channels = pixels.shape
    scaled = _to_uint8(pixels)

    rgba = np.empty((height, width, 4), dtype=np.uint8)
    if channels in (1, 2):
        rgba[:, :, :3] = scaled[:, :, :1]
    else:
        rgba[:, :, :3] = scaled[:, :, :3]
    if channels == 2:
        rgba[:, :, 3] = scaled[:, :, 1]
    elif channels >= 4:
        rgba[:, :, 3] = scaled[:, :, 3]
    else:
        rgba[:, :, 3] = 255
    return rgba


def scientific_view(pixels: np.ndarray) -> np.ndarray:
    """Float samples of one page: mono passes through, color uses Rec.709 luma."""
    if pixels.ndim == 2:
        return pixels.astype(np.float32)
    if pixels.shape[2] < 3:
        return pixels[:, :, 0].astype(np.float32)
    rgb = pixels[:, :, :3].astype(np.float32)
    return rgb @ LUMA_WEIGHTS


def make_frame(pixels: np.ndarray, bit_depth: int = 0) -> RasterFrame:
    """Wrap native samples (height, width[, channels]) as a RasterFrame."""
    channels = 1 if pixels.ndim == 2 else pixels.shape[2]
    return RasterFrame(
        width=pixels.shape[1],
        height=pixels.shape[0],
        rgba=to_rgba8(pixels),
        pixels=pixels,
        channels=channels,
        bit_depth=bit_depth or bit_depth_of(pixels.dtype),
        sample_format=sample_format_of(pixels.dtype),
    )


def _header_value(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, (float, str)):
        return value
    if isinstance(value, bytes):
        return value.decode("ascii", errors="replace").rstrip("\x00")
    text = str(value)
    return text if len(text) <= 68 else text[:65] + "..."


def decode_pillow(payload: bytes, kind: str) -> tuple[RasterFrame, list[HeaderKeyword], dict]:
    """
    Decode a PNG/JPEG/WebP/BMP payload.

    Returns (frame, keywords, info) where keywords carries text chunks and
    info holds dpi and the EXIF orientation that was applied.
    """
    try:
        with Image.open(io.BytesIO(payload)) as img:
            img.load()
            orientation = int(img.getexif().get(EXIF_ORIENTATION_TAG, 1))
            text_chunks = {
                k: v for k, v in img.info.items() if isinstance(v, (str, int, float))
            }
            dpi = img.info.get("dpi")
            img = ImageOps.exif_transpose(img)
            if img.mode in _CONVERT_MODES:
                img = img.convert(_CONVERT_MODES[img.mode])
            pixels = np.asarray(img)
            mode = img.mode
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise CorruptData(f"Cannot decode {kind} image: {e}") from e

    bit_depth = 0
    if mode == "I" and pixels.size and pixels.min() >= 0 and pixels.max() <= 65535:
        # 16-bit PNGs surface as 32-bit "I" in some Pillow versions
        pixels = pixels.astype(np.uint16)
        bit_depth = 16

    keywords = [
        HeaderKeyword(key=str(k).upper()[:68], value=_header_value(v))
        for k, v in text_chunks.items()
        if k not in ("dpi", "exif", "icc_profile")
    ]
    info = {
        "dpi": tuple(float(d) for d in dpi) if dpi else None,
        "orientation": orientation,
        "mode": mode,
    }
    return make_frame(pixels, bit_depth), keywords, info


class TiffFrameProvider:
    """
    Lazy access to the pages of a TIFF payload.

    Pages are decoded on request and never cached. Iteration restarts from
    page 0 every time.
    """

    def __init__(self, payload: bytes):
        self._payload = payload
        try:
            with self._open() as tif:
                self.page_count = len(tif.pages)
        except (tifffile.TiffFileError, ValueError, OSError, IndexError) as e:
            raise CorruptData(f"Cannot read TIFF structure: {e}") from e
        if self.page_count == 0:
            raise CorruptData("TIFF contains no pages")

    def _open(self) -> tifffile.TiffFile:
        return tifffile.TiffFile(io.BytesIO(self._payload))

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.page_count:
            raise IndexError(f"Page {index} out of range (pages={self.page_count})")

    def get_headers(self, index: int) -> list[HeaderKeyword]:
        """Tags of one page as header keywords, in file order."""
        self._check_index(index)
        with self._open() as tif:
            tags = list(tif.pages[index].tags.values())
            return [HeaderKeyword(key=tag.name, value=_header_value(tag.value)) for tag in tags]

    def _pillow_pixels(self, index: int) -> np.ndarray:
        """Decode one page through Pillow's libtiff (codecs tifffile lacks, e.g. LZW)."""
        with Image.open(io.BytesIO(self._payload)) as img:
            img.seek(index)
            img.load()
            if img.mode in _CONVERT_MODES:
                img = img.convert(_CONVERT_MODES[img.mode])
            return np.asarray(img)

    def get_frame(self, index: int) -> RasterFrame:
        """Decode one page."""
        self._check_index(index)
        try:
            with self._open() as tif:
                page = tif.pages[index]
                bit_depth = int(page.bitspersample)
                try:
                    pixels = page.asarray()
                except ValueError as e:
                    logging.debug(f"tifffile cannot decode TIFF page {index} ({e}), using Pillow")
                    pixels = self._pillow_pixels(index)
                else:
                    if pixels.ndim == 3 and page.planarconfig == tifffile.PLANARCONFIG.SEPARATE:
                        pixels = np.moveaxis(pixels, 0, -1)
        except (tifffile.TiffFileError, ValueError, OSError, EOFError) as e:
            raise CorruptData(f"Cannot decode TIFF page {index}: {e}") from e

        if pixels.ndim > 3:
            logging.warning(f"TIFF page {index} has {pixels.ndim} dimensions, using the first plane")
            pixels = pixels.reshape((-1,) + pixels.shape[-3:])[0]
        return make_frame(pixels, bit_depth)

    def __len__(self) -> int:
        return self.page_count

    def __iter__(self) -> Iterator[RasterFrame]:
        for index in range(self.page_count):
            yield self.get_frame(index)

    def release(self) -> None:
        """Drop the payload; the provider is unusable afterwards."""
        self._payload = b""
        self.page_count = 0
