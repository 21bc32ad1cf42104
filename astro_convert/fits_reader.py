"""
FITS stream parsing: structural scan, header cards and HDU decoding.

The structural scan walks the raw 2880-byte blocks so that malformed cards
and truncated units can be reported with their byte offset. Pixel decoding
(BSCALE/BZERO, tile compression) is delegated to astropy.
"""

import io
import logging
import math
import re
import warnings

import numpy as np
from astropy.io import fits
from astropy.io.fits.verify import VerifyError, VerifyWarning

from .errors import CorruptData, UnsupportedFormat
from .models import (
    SAMPLE_FLOAT,
    SAMPLE_SIGNED,
    SAMPLE_UNSIGNED,
    HDUInfo,
    HeaderKeyword,
    ScientificImage,
)

# Suppress noisy astropy FITS warnings (card length, HIERARCH keywords, etc.)
warnings.filterwarnings("ignore", category=VerifyWarning)

BLOCK_SIZE = 2880
CARD_SIZE = 80
VALID_BITPIX = (8, 16, 32, 64, -32, -64)
COMMENTARY_KEYS = ("COMMENT", "HISTORY", "")
_CONTINUE_RE = re.compile(r"CONTINUE  '((?:[^']|'')*)'")


def _padded(size: int) -> int:
    return int(math.ceil(size / BLOCK_SIZE)) * BLOCK_SIZE


def _is_end_record(record: bytes) -> bool:
    return record[:3] == b"END" and not record[3:].strip()


def _parse_card(record: bytes, offset: int) -> fits.Card:
    """Parse one 80-byte record, raising CorruptData at its offset."""
    try:
        text = record.decode("ascii")
    except UnicodeDecodeError:
        raise CorruptData("Header record contains non-ASCII bytes", offset) from None
    if not text.isprintable():
        raise CorruptData("Header record contains control characters", offset)

    card = fits.Card.fromstring(text)
    if card.keyword == "CONTINUE":
        return card
    try:
        # Value parsing is lazy in astropy, force it here
        card.value
    except (VerifyError, ValueError) as e:
        raise CorruptData(f"Malformed header card {text[:8].strip()!r}: {e}", offset) from e
    return card


def _card_value(card: fits.Card):
    value = card.value
    if isinstance(value, fits.card.Undefined):
        return None
    if isinstance(value, complex):
        return str(value)
    return value


def _to_keyword(card: fits.Card) -> HeaderKeyword:
    if card.keyword in COMMENTARY_KEYS:
        return HeaderKeyword(key=card.keyword, value=str(card.value))
    return HeaderKeyword(
        key=card.keyword,
        value=_card_value(card),
        comment=card.comment or None,
    )


def parse_header(data: bytes, start: int = 0) -> list[HeaderKeyword]:
    """
    Parse header cards from raw bytes up to the END card.

    Order and duplicate keys are preserved exactly. CONTINUE cards are
    folded into the long string value they extend.
    """
    keywords: list[HeaderKeyword] = []
    pos = start
    while pos + CARD_SIZE <= len(data):
        record = data[pos:pos + CARD_SIZE]
        if _is_end_record(record):
            return keywords
        card = _parse_card(record, pos)
        if card.keyword == "CONTINUE" and keywords and isinstance(keywords[-1].value, str):
            previous = keywords[-1]
            match = _CONTINUE_RE.match(record.decode("ascii"))
            fragment = match.group(1).replace("''", "'").rstrip() if match else ""
            text = previous.value[:-1] if previous.value.endswith("&") else previous.value
            keywords[-1] = HeaderKeyword(previous.key, text + fragment, previous.comment)
        else:
            keywords.append(_to_keyword(card))
        pos += CARD_SIZE
    raise CorruptData("Header has no END card", pos)


def make_card(keyword: HeaderKeyword) -> fits.Card:
    """Build an astropy Card from a HeaderKeyword."""
    if keyword.key in COMMENTARY_KEYS:
        return fits.Card(keyword.key, "" if keyword.value is None else str(keyword.value))
    return fits.Card(keyword.key, keyword.value, keyword.comment or "")


def format_header(keywords: list[HeaderKeyword]) -> bytes:
    """Serialize keywords as 80-column cards, END, padded to a full block."""
    images = [make_card(kw).image for kw in keywords]
    images.append("END".ljust(CARD_SIZE))
    text = "".join(images)
    return text.ljust(_padded(len(text))).encode("ascii")


def _hdu_type(index: int, values: dict) -> str:
    if index == 0:
        return "Image"
    xtension = str(values.get("XTENSION", "")).strip().upper()
    if xtension == "IMAGE":
        return "Image"
    if xtension == "BINTABLE":
        return "CompressedImage" if values.get("ZIMAGE") is True else "BinaryTable"
    if xtension == "TABLE":
        return "Table"
    return "Unknown"


def scan_structure(data: bytes) -> list[HDUInfo]:
    """
    Walk every header/data unit and validate its layout.

    Raises CorruptData for malformed cards, missing END or truncated data,
    UnsupportedFormat for unknown BITPIX codes.
    """
    hdus: list[HDUInfo] = []
    offset = 0
    size = len(data)

    while offset < size:
        if hdus and data[offset:offset + 8] != b"XTENSION":
            logging.debug(f"Ignoring {size - offset} trailing bytes after last HDU")
            break

        header_offset = offset
        values: dict = {}
        pos = offset
        end_found = False
        while pos + CARD_SIZE <= size:
            record = data[pos:pos + CARD_SIZE]
            pos += CARD_SIZE
            if _is_end_record(record):
                end_found = True
                break
            card = _parse_card(record, pos - CARD_SIZE)
            if pos - CARD_SIZE == header_offset and not hdus and card.keyword != "SIMPLE":
                raise CorruptData("Primary header does not start with SIMPLE", header_offset)
            if card.keyword and card.keyword != "CONTINUE" and card.keyword not in values:
                values[card.keyword] = _card_value(card)
        if not end_found:
            raise CorruptData("Header has no END card", pos)

        bitpix = values.get("BITPIX")
        if not isinstance(bitpix, int) or bitpix not in VALID_BITPIX:
            raise UnsupportedFormat(f"Unsupported BITPIX {bitpix!r} in HDU {len(hdus)}")

        naxis = values.get("NAXIS", 0)
        if not isinstance(naxis, int) or naxis < 0:
            raise CorruptData(f"Invalid NAXIS {naxis!r}", header_offset)
        axes = []
        for i in range(1, naxis + 1):
            length = values.get(f"NAXIS{i}")
            if not isinstance(length, int) or length < 0:
                raise CorruptData(f"Missing or invalid NAXIS{i}", header_offset)
            axes.append(length)

        if values.get("GROUPS") is True and axes and axes[0] == 0:
            elements = math.prod(axes[1:])
        else:
            elements = math.prod(axes) if axes else 0
        pcount = values.get("PCOUNT", 0) or 0
        gcount = values.get("GCOUNT", 1) or 1
        data_size = abs(bitpix) // 8 * gcount * (pcount + elements) if naxis else 0

        data_offset = header_offset + _padded(pos - header_offset)
        if data_offset + data_size > size:
            raise CorruptData(f"Data unit of HDU {len(hdus)} is truncated", size)

        hdu_type = _hdu_type(len(hdus), values)
        if hdu_type == "CompressedImage":
            znaxis = values.get("ZNAXIS", 0) or 0
            shape = tuple(values.get(f"ZNAXIS{i}", 0) for i in range(znaxis, 0, -1))
            bitpix = values.get("ZBITPIX", bitpix)
        else:
            shape = tuple(reversed(axes))

        hdus.append(HDUInfo(
            index=len(hdus),
            type=hdu_type,
            has_data=data_size > 0,
            header_offset=header_offset,
            data_offset=data_offset,
            data_size=data_size,
            bitpix=bitpix,
            shape=shape,
        ))
        offset = data_offset + _padded(data_size)

    if not hdus:
        raise CorruptData("Empty FITS stream", 0)
    return hdus


def default_image_hdu(hdus: list[HDUInfo]) -> int:
    """Index of the first HDU holding image pixels."""
    for info in hdus:
        if info.has_data and info.type in ("Image", "CompressedImage"):
            return info.index
    raise UnsupportedFormat("FITS stream contains no image data")


def sample_format_for(bitpix: int, bscale: float = 1.0, bzero: float = 0.0) -> str:
    """Classify a BITPIX code plus scaling as signed, unsigned or float."""
    if bitpix < 0:
        return SAMPLE_FLOAT
    if bitpix == 8:
        return SAMPLE_UNSIGNED
    if bscale == 1 and bzero == 2 ** (bitpix - 1):
        return SAMPLE_UNSIGNED
    return SAMPLE_SIGNED


def _as_frames(pixels: np.ndarray) -> np.ndarray:
    if pixels.ndim == 1:
        return pixels.reshape(1, 1, -1)
    if pixels.ndim == 2:
        return pixels[np.newaxis, :, :]
    if pixels.ndim == 3:
        return pixels
    # Fold NAXIS4.. into the frame axis
    return pixels.reshape(-1, pixels.shape[-2], pixels.shape[-1])


def decode_hdu(data: bytes, info: HDUInfo) -> tuple[ScientificImage, list[HeaderKeyword]]:
    """Decode one image HDU into physical samples and its header keywords."""
    if info.type not in ("Image", "CompressedImage"):
        raise UnsupportedFormat(f"HDU {info.index} is a {info.type}, not an image")
    if not info.has_data:
        raise UnsupportedFormat(f"HDU {info.index} has no image data")

    try:
        with fits.open(io.BytesIO(data), memmap=False) as hdul:
            hdu = hdul[info.index]
            header = hdu.header
            pixels = hdu.data
            if pixels is None:
                raise UnsupportedFormat(f"HDU {info.index} has no image data")
            samples = _as_frames(np.asarray(pixels, dtype=np.float32))
            bitpix = int(header.get("BITPIX", info.bitpix))
            bscale = float(header.get("BSCALE", 1.0))
            bzero = float(header.get("BZERO", 0.0))
            if info.type == "CompressedImage":
                keywords = [_to_keyword(card) for card in header.cards]
            else:
                keywords = None
    except (OSError, ValueError, TypeError, IndexError) as e:
        raise CorruptData(f"Cannot decode HDU {info.index}: {e}", info.data_offset) from e

    if keywords is None:
        keywords = parse_header(data, info.header_offset)

    image = ScientificImage(
        samples=samples,
        bit_depth=abs(bitpix),
        sample_format=sample_format_for(bitpix, bscale, bzero),
        orientation="bottom-up",
        hdu_index=info.index,
    )
    return image, keywords
