"""
Encoding of rendered RGBA buffers and scientific samples into target formats.

encode() never fails on a constraint it can satisfy by degrading: requests
the target cannot honor (scientific FITS without samples, 16-bit color PNG,
LZW on float TIFF, out-of-range depth or quality) are adjusted and the
adjustment is recorded in ExportDiagnostics.
"""

import io
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import tifffile
from PIL import Image

from .colormaps import colorize
from .config import (
    ExportOptions,
    get_supported_bit_depths,
    supports_quality,
    validate_options,
)
from .decorations import apply_decorations
from .errors import EncodeConstraintViolation
from .fits_writer import normalize_compression, write_fits
from .models import SOURCE_FITS, EncodeResult, ExportDiagnostics, ExportSource
from .pipeline import is_grayscale, rgba_luma
from .raster_reader import to_rgba8
from .stretch import stretch

EXTENSIONS = {
    "png": "png",
    "jpeg": "jpg",
    "webp": "webp",
    "tiff": "tiff",
    "bmp": "bmp",
    "fits": "fits",
}

MIME_TYPES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "tiff": "image/tiff",
    "bmp": "image/bmp",
    "fits": "application/fits",
}

FALLBACK_MESSAGE_KEYS = {
    "scientific_unavailable": "converter.fitsFallbackScientificUnavailable",
    "scientific_with_decorations_requires_rendered": "converter.fitsFallbackDecorations",
}

# tifffile codecs; LZW is written through Pillow
TIFF_CODECS = {"deflate": "zlib", "none": None}

# Output bytes per raw byte, shared by the size estimate
COMPRESSION_RATIOS = {
    "png": 0.5,
    "jpeg": 0.15,
    "webp": 0.1,
    "tiff": {"none": 1.0, "lzw": 0.6, "deflate": 0.55},
    "fits": {"none": 1.0, "gzip": 0.7},
}

FITS_HEADER_BYTES = 2880
BMP_HEADER_BYTES = 54


def clamp_quality(quality) -> int:
    try:
        value = int(round(float(quality)))
    except (TypeError, ValueError):
        return 90
    return min(max(value, 1), 100)


def resolve_bit_depth(fmt: str, requested) -> int:
    """Nearest supported depth for a format; ties go to the lower depth."""
    supported = get_supported_bit_depths(fmt)
    try:
        requested = int(requested)
    except (TypeError, ValueError):
        return supported[0]
    return min(supported, key=lambda depth: (abs(depth - requested), depth))


def output_extension(options: ExportOptions) -> str:
    if options.format == "fits" and options.fits.compression == "gzip":
        return "fits.gz"
    return EXTENSIONS[options.format]


def estimate_channels(options: ExportOptions, mono_source: bool) -> int:
    """Channels the raster encoders write: 1 for undecorated grayscale renders."""
    if mono_source and options.colormap == "grayscale" and not _has_decorations(options):
        return 1
    return 3


def estimate_file_size(width: int, height: int, options: ExportOptions,
                       channels: int = 3) -> int:
    """
    Analytic output size in bytes, without encoding.

    Follows the encoder's bit depth and compression downgrades for the given
    channel count. Non-decreasing in bit depth for fixed dimensions.
    """
    pixels = max(0, int(width)) * max(0, int(height))
    channels = 1 if channels == 1 else 3
    fmt = options.format
    depth = resolve_bit_depth(fmt, options.bit_depth)

    if fmt == "png":
        if depth == 16 and channels > 1:
            depth = 8
        return round(pixels * channels * COMPRESSION_RATIOS["png"] * depth / 8)
    if fmt in ("jpeg", "webp"):
        quality = clamp_quality(options.quality)
        return round(pixels * 3 * quality / 100 * COMPRESSION_RATIOS[fmt])
    if fmt == "tiff":
        compression = options.tiff.compression
        if compression == "lzw" and depth == 32:
            compression = "none"
        elif compression == "lzw" and depth == 16 and channels > 1:
            compression = "deflate"
        ratio = COMPRESSION_RATIOS["tiff"][compression]
        return round(pixels * channels * depth / 8 * ratio)
    if fmt == "bmp":
        return pixels * 3 + BMP_HEADER_BYTES
    if fmt == "fits":
        planes = 3 if options.fits.color_layout == "rgbCube3d" else 1
        raw = pixels * planes * abs(int(options.fits.bitpix)) // 8 + FITS_HEADER_BYTES
        return round(raw * COMPRESSION_RATIOS["fits"][options.fits.compression])
    return pixels * 3


@dataclass
class _Request:
    """Working state of one encode call."""

    rgba: np.ndarray
    options: ExportOptions
    source: Optional[ExportSource]
    normalized: Optional[np.ndarray]
    diagnostics: ExportDiagnostics
    decorated: bool = False


def _has_decorations(options: ExportOptions) -> bool:
    return bool(options.render.include_annotations or options.render.include_watermark)


def _apply_fallback(diag: ExportDiagnostics, code: str) -> None:
    diag.fallback_applied = True
    diag.fallback_reason_code = code
    diag.fallback_reason_message_key = FALLBACK_MESSAGE_KEYS[code]
    diag.effective_fits_mode = "rendered"


def resolve_fits_mode(options: ExportOptions, source: Optional[ExportSource],
                      diagnostics: ExportDiagnostics) -> str:
    """Effective FITS mode, recording any fallback in diagnostics."""
    requested = options.fits.mode
    available = bool(source and source.has_scientific_data)
    diagnostics.requested_fits_mode = requested
    diagnostics.effective_fits_mode = requested
    diagnostics.scientific_available = available
    if requested != "scientific":
        return requested

    if not available:
        _apply_fallback(diagnostics, "scientific_unavailable")
        logging.warning("FITS scientific export unavailable, falling back to rendered")
    elif _has_decorations(options):
        _apply_fallback(diagnostics, "scientific_with_decorations_requires_rendered")
        logging.info("FITS scientific export with decorations requested, falling back to rendered")
    return diagnostics.effective_fits_mode


# Raster encoders


def _rgb_or_rgba(rgba: np.ndarray) -> Image.Image:
    if np.all(rgba[..., 3] == 255):
        return Image.fromarray(np.ascontiguousarray(rgba[..., :3]))
    return Image.fromarray(np.ascontiguousarray(rgba))


def _unit_to_uint16(values: np.ndarray) -> np.ndarray:
    return np.rint(np.clip(values, 0.0, 1.0) * 65535.0).astype(np.uint16)


def _mono16(request: _Request) -> np.ndarray:
    """16-bit grayscale samples, full precision when available."""
    if request.normalized is not None and not request.decorated \
            and request.options.colormap == "grayscale":
        return _unit_to_uint16(request.normalized)
    return request.rgba[..., 0].astype(np.uint16) * 257


def encode_png(request: _Request) -> bytes:
    diag = request.diagnostics
    depth = resolve_bit_depth("png", request.options.bit_depth)
    if depth == 16 and not is_grayscale(request.rgba):
        message = "16-bit PNG is only written for grayscale images, exported 8-bit"
        logging.warning(message)
        diag.warnings.append(message)
        depth = 8
    diag.effective_bit_depth = depth

    if depth == 16:
        image = Image.fromarray(_mono16(request))
    else:
        image = _rgb_or_rgba(request.rgba)
    buffer = io.BytesIO()
    dpi = request.options.dpi
    image.save(buffer, format="PNG", dpi=(dpi, dpi))
    return buffer.getvalue()


def encode_jpeg(request: _Request) -> bytes:
    request.diagnostics.effective_bit_depth = 8
    image = Image.fromarray(np.ascontiguousarray(request.rgba[..., :3]))
    buffer = io.BytesIO()
    dpi = request.options.dpi
    image.save(buffer, format="JPEG", quality=clamp_quality(request.options.quality),
               dpi=(dpi, dpi))
    return buffer.getvalue()


def encode_webp(request: _Request) -> bytes:
    request.diagnostics.effective_bit_depth = 8
    buffer = io.BytesIO()
    _rgb_or_rgba(request.rgba).save(buffer, format="WEBP",
                                    quality=clamp_quality(request.options.quality))
    return buffer.getvalue()


def encode_bmp(request: _Request) -> bytes:
    request.diagnostics.effective_bit_depth = 8
    image = Image.fromarray(np.ascontiguousarray(request.rgba[..., :3]))
    buffer = io.BytesIO()
    image.save(buffer, format="BMP")
    return buffer.getvalue()


# TIFF


def _unit_page(values: np.ndarray, depth: int) -> np.ndarray:
    """Page samples from values in [0, 1] ((h, w) or (h, w, 3))."""
    values = np.clip(values, 0.0, 1.0)
    if depth == 32:
        return values.astype(np.float32)
    if depth == 16:
        return _unit_to_uint16(values)
    return np.rint(values * 255.0).astype(np.uint8)


def _page_from_rgba(rgba: np.ndarray, depth: int) -> np.ndarray:
    if depth == 8:
        return rgba[..., 0].copy() if is_grayscale(rgba) else np.ascontiguousarray(rgba[..., :3])
    values = rgba[..., :3].astype(np.float32) / 255.0
    return _unit_page(values[..., 0] if is_grayscale(rgba) else values, depth)


def _page_from_normalized(normalized: np.ndarray, colormap: str, depth: int) -> np.ndarray:
    if colormap == "grayscale":
        return _unit_page(normalized, depth)
    return _page_from_rgba(colorize(normalized, colormap), depth)


def _native_to_unit(pixels: np.ndarray) -> np.ndarray:
    """Native raster samples rescaled to [0, 1]."""
    dtype = pixels.dtype
    if dtype.kind == "f":
        return np.nan_to_num(pixels.astype(np.float32), nan=0.0)
    if dtype == np.bool_:
        return pixels.astype(np.float32)
    info = np.iinfo(dtype)
    return (pixels.astype(np.float64) - info.min) / float(info.max - info.min)


def _page_from_native(pixels: np.ndarray, depth: int) -> np.ndarray:
    if pixels.ndim == 3:
        # Alpha and extra samples are dropped
        pixels = pixels[..., :3] if pixels.shape[-1] >= 3 else pixels[..., 0]
    if depth == 8:
        rgba = to_rgba8(pixels)
        return _page_from_rgba(rgba, 8)
    return _unit_page(_native_to_unit(pixels), depth)


def tiff_pages(request: _Request, depth: int) -> list[np.ndarray]:
    """Pages to write, one per source frame when multipage is preserved."""
    options = request.options
    source = request.source
    preserve = options.tiff.multipage == "preserve" and not request.decorated and source is not None

    if preserve and source.frame_provider is not None and source.frame_provider.page_count > 1:
        if source.source_type == SOURCE_FITS and source.image is not None:
            return [
                _page_from_normalized(stretch(source.image.frame(i), None, options.stretch),
                                      options.colormap, depth)
                for i in range(source.image.depth)
            ]
        return [_page_from_native(frame.pixels, depth) for frame in source.frame_provider]

    if request.normalized is not None and not request.decorated:
        return [_page_from_normalized(request.normalized, options.colormap, depth)]
    return [_page_from_rgba(request.rgba, depth)]


def _downgrade_compression(diag: ExportDiagnostics, message: str) -> None:
    message = f"tiff_compression_downgraded: {message}"
    logging.warning(message)
    diag.warnings.append(message)


def _write_lzw(pages: list[np.ndarray], dpi: float) -> bytes:
    """LZW pages through Pillow's libtiff encoder."""
    images = [Image.fromarray(np.ascontiguousarray(page)) for page in pages]
    buffer = io.BytesIO()
    images[0].save(
        buffer,
        format="TIFF",
        compression="tiff_lzw",
        dpi=(dpi, dpi),
        save_all=True,
        append_images=images[1:],
    )
    return buffer.getvalue()


def encode_tiff(request: _Request) -> bytes:
    options = request.options
    diag = request.diagnostics
    depth = resolve_bit_depth("tiff", options.bit_depth)
    compression = options.tiff.compression
    if depth == 32 and compression == "lzw":
        _downgrade_compression(diag, "LZW is not applied to 32-bit float pages")
        compression = "none"

    pages = tiff_pages(request, depth)
    if compression == "lzw" and depth == 16 and any(page.ndim == 3 for page in pages):
        _downgrade_compression(diag, "LZW is not available for 16-bit color pages, used deflate")
        compression = "deflate"
    diag.effective_bit_depth = depth
    diag.effective_compression = compression

    dpi = float(options.dpi)
    if compression == "lzw":
        payload = _write_lzw(pages, dpi)
    else:
        buffer = io.BytesIO()
        with tifffile.TiffWriter(buffer) as tif:
            for page in pages:
                tif.write(
                    page,
                    photometric="rgb" if page.ndim == 3 else "minisblack",
                    compression=TIFF_CODECS[compression],
                    resolution=(dpi, dpi),
                    resolutionunit=tifffile.RESUNIT.INCH,
                )
        payload = buffer.getvalue()
    logging.debug(f"Wrote TIFF with {len(pages)} page(s), {depth}-bit, compression={compression}")
    return payload


# FITS


def _fast_path_allowed(request: _Request, mode: str) -> bool:
    source = request.source
    fits_opts = request.options.fits
    if mode != "scientific" or source is None or source.source_type != SOURCE_FITS:
        return False
    if not source.original_bytes or request.decorated:
        return False
    if not (fits_opts.preserve_original_header and fits_opts.preserve_wcs):
        return False
    return source.original_bitpix is None or source.original_bitpix == fits_opts.bitpix


def _scientific_data(request: _Request) -> np.ndarray:
    """Physical samples for a scientific FITS export."""
    source = request.source
    image = source.image
    provider = source.frame_provider
    if source.source_type != SOURCE_FITS and provider is not None and provider.page_count > 1 \
            and request.options.tiff.multipage == "preserve":
        frames = [frame.pixels for frame in provider]
        first = frames[0]
        if all(f.ndim == 2 and f.shape == first.shape for f in frames):
            return np.stack([f.astype(np.float32) for f in frames])
        message = "TIFF multipage structure is not fully representable in FITS, exported first frame."
        logging.warning(message)
        request.diagnostics.warnings.append(message)
        return np.asarray(image.frame(0))
    samples = np.asarray(image.samples)
    return samples[0] if image.depth == 1 else samples


def _rendered_data(request: _Request, integer: bool) -> np.ndarray:
    """Rendered planes for FITS: luma, RGB planes or one plane per frame."""
    options = request.options
    layout = options.fits.color_layout
    source = request.source
    if layout == "rgbCube3d":
        planes = np.moveaxis(request.rgba[..., :3], -1, 0).astype(np.float32)
        return planes if integer else planes / 255.0

    scale = 255.0 if integer else 1.0
    rounding = np.rint if integer else np.asarray
    if layout == "monoCube3d" and source is not None and source.image is not None \
            and source.image.depth > 1 and not request.decorated:
        frames = [stretch(source.image.frame(i), None, options.stretch)
                  for i in range(source.image.depth)]
        return rounding(np.stack(frames) * scale)
    return rounding(rgba_luma(request.rgba) * scale)


def encode_fits(request: _Request) -> bytes:
    options = request.options
    fits_opts = options.fits
    source = request.source
    diag = request.diagnostics
    mode = diag.effective_fits_mode or fits_opts.mode
    diag.effective_compression = fits_opts.compression
    diag.effective_bit_depth = abs(int(fits_opts.bitpix))

    if _fast_path_allowed(request, mode):
        logging.debug("Reusing original FITS bytes")
        return normalize_compression(source.original_bytes, fits_opts.compression)

    if mode == "scientific":
        data = _scientific_data(request)
    else:
        data = _rendered_data(request, integer=fits_opts.bitpix > 0)

    history = list(source.history) if source else []
    history.extend(w for w in diag.warnings if w.startswith("TIFF multipage"))
    payload, card_warnings = write_fits(
        data,
        fits_opts.bitpix,
        keywords=source.keywords if source else None,
        comments=source.comments if source else None,
        history=history,
        metadata=source.metadata if source else None,
        preserve_header=fits_opts.preserve_original_header,
        preserve_wcs=fits_opts.preserve_wcs,
        mode=mode,
        source_format=source.source_format if source else "unknown",
        compression=fits_opts.compression,
    )
    diag.warnings.extend(card_warnings)
    return payload


ENCODERS = {
    "png": encode_png,
    "jpeg": encode_jpeg,
    "webp": encode_webp,
    "bmp": encode_bmp,
    "tiff": encode_tiff,
    "fits": encode_fits,
}


def encode(rgba: np.ndarray, options: ExportOptions, source: Optional[ExportSource] = None,
           filename: str = "image", normalized: Optional[np.ndarray] = None) -> EncodeResult:
    """
    Encode a rendered (height, width, 4) uint8 buffer.

    Args:
        rgba: Rendered image, never modified
        options: Target options
        source: Scientific data, header and annotations of the source image
        filename: Used in the default watermark text
        normalized: Stretched [0, 1] frame behind rgba, for >8-bit outputs

    Returns:
        EncodeResult with bytes, extension, MIME type and diagnostics
    """
    validate_options(options)
    rgba = np.asarray(rgba, dtype=np.uint8)
    if rgba.ndim != 3 or rgba.shape[-1] != 4 or 0 in rgba.shape:
        raise ValueError(f"Expected a non-empty (height, width, 4) RGBA array, got {rgba.shape}")

    diagnostics = ExportDiagnostics()
    request = _Request(rgba, options, source, normalized, diagnostics)

    if options.format == "fits":
        resolve_fits_mode(options, source, diagnostics)
    if supports_quality(options.format):
        quality = clamp_quality(options.quality)
        if quality != options.quality:
            diagnostics.warnings.append(f"Quality {options.quality} clamped to {quality}")

    if _has_decorations(options):
        decorated = apply_decorations(
            rgba,
            options.render,
            stars=source.stars if source else None,
            astrometry=source.astrometry if source else None,
            filename=filename,
            fmt=options.format,
        )
        request.rgba = decorated.rgba
        request.decorated = True
        diagnostics.annotations_drawn = decorated.annotations_drawn
        diagnostics.watermark_applied = decorated.watermark_applied
        diagnostics.warnings.extend(decorated.warnings)

    try:
        data = ENCODERS[options.format](request)
    except (OSError, ValueError, KeyError) as e:
        raise EncodeConstraintViolation(
            f"Cannot encode {options.format}: {e}", "encode_failed"
        ) from e

    return EncodeResult(
        data=data,
        extension=output_extension(options),
        mime_type=MIME_TYPES[options.format],
        diagnostics=diagnostics,
    )
