"""Tests for encoder module."""

import io

import numpy as np
import pytest
import tifffile
from astropy.io import fits
from conftest import tiff_bytes
from PIL import Image

from astro_convert.config import with_overrides
from astro_convert.converter import convert_buffer
from astro_convert.encoder import (
    encode,
    estimate_channels,
    estimate_file_size,
    output_extension,
    resolve_bit_depth,
)
from astro_convert.errors import EncodeConstraintViolation
from astro_convert.models import ExportSource, StarAnnotationPoint
from astro_convert.pipeline import process


def gray_rgba():
    return process(np.linspace(0.0, 1.0, 12 * 10, dtype=np.float32).reshape(10, 12))


def color_rgba():
    return process(np.linspace(0.0, 1.0, 12 * 10, dtype=np.float32).reshape(10, 12),
                   colormap="viridis")


def read_fits(payload: bytes):
    with fits.open(io.BytesIO(payload)) as hdul:
        return hdul[0].header.copy(), np.array(hdul[0].data)


# Test bit depth and estimates


def test_resolve_bit_depth():
    """Test nearest supported depth, ties to the lower one."""
    assert resolve_bit_depth("png", 16) == 16
    assert resolve_bit_depth("png", 12) == 8
    assert resolve_bit_depth("png", 32) == 16
    assert resolve_bit_depth("tiff", 24) == 16
    assert resolve_bit_depth("tiff", 32) == 32
    assert resolve_bit_depth("jpeg", 16) == 8
    assert resolve_bit_depth("bmp", "bad") == 8


@pytest.mark.parametrize("channels", [1, 3])
@pytest.mark.parametrize("fmt", ["png", "tiff", "jpeg", "webp", "bmp"])
def test_estimate_monotonic_in_bit_depth(fmt, channels):
    """Test size estimates never shrink as bit depth grows."""
    sizes = [
        estimate_file_size(640, 480, with_overrides({"format": fmt, "bit_depth": depth}), channels)
        for depth in (8, 16, 32)
    ]
    assert sizes == sorted(sizes)
    assert sizes[0] > 0


def test_estimate_fits_uses_bitpix_and_planes():
    """Test FITS estimate follows BITPIX and color layout."""
    mono = estimate_file_size(100, 100, with_overrides({"format": "fits", "fits": {"bitpix": 16}}))
    assert mono == 100 * 100 * 2 + 2880
    cube = estimate_file_size(100, 100, with_overrides(
        {"format": "fits", "fits": {"bitpix": 16, "color_layout": "rgbCube3d"}}
    ))
    assert cube == 100 * 100 * 3 * 2 + 2880


def test_estimate_png_16bit_follows_encoder():
    """Test 16-bit PNG estimates drop color output to 8 bits like the encoder."""
    options = with_overrides({"format": "png", "bit_depth": 16})
    color = encode(color_rgba(), options)
    assert color.diagnostics.effective_bit_depth == 8
    assert estimate_file_size(12, 10, options) == estimate_file_size(
        12, 10, with_overrides({"format": "png", "bit_depth": 8}))

    mono = encode(gray_rgba(), options)
    assert mono.diagnostics.effective_bit_depth == 16
    assert estimate_file_size(100, 100, options, channels=1) == round(100 * 100 * 2 * 0.5)


def test_estimate_tiff_16bit_color_lzw_uses_deflate():
    """Test 16-bit color LZW estimates use the deflate ratio the encoder switches to."""
    options = with_overrides({"format": "tiff", "bit_depth": 16, "tiff": {"compression": "lzw"}})
    assert estimate_file_size(100, 100, options) == round(100 * 100 * 3 * 2 * 0.55)
    assert estimate_file_size(100, 100, options, channels=1) == round(100 * 100 * 2 * 0.6)


def test_estimate_channels():
    """Test only undecorated grayscale renders of mono sources count as one channel."""
    assert estimate_channels(with_overrides({}), True) == 1
    assert estimate_channels(with_overrides({}), False) == 3
    assert estimate_channels(with_overrides({"colormap": "viridis"}), True) == 3
    assert estimate_channels(with_overrides({"render": {"include_watermark": True}}), True) == 3


def test_estimate_bmp():
    """Test BMP estimate is raw 24-bit plus header."""
    assert estimate_file_size(10, 10, with_overrides({"format": "bmp"})) == 354


def test_output_extension():
    """Test extensions per format."""
    assert output_extension(with_overrides({"format": "jpeg"})) == "jpg"
    assert output_extension(with_overrides({"format": "fits"})) == "fits"
    assert output_extension(with_overrides({"format": "fits", "fits": {"compression": "gzip"}})) == "fits.gz"


# Test raster encoders


@pytest.mark.parametrize("fmt,magic,mime", [
    ("png", b"\x89PNG", "image/png"),
    ("jpeg", b"\xff\xd8\xff", "image/jpeg"),
    ("bmp", b"BM", "image/bmp"),
    ("tiff", b"II*\x00", "image/tiff"),
])
def test_raster_signatures(fmt, magic, mime):
    """Test each raster encoder produces its container."""
    result = encode(gray_rgba(), with_overrides({"format": fmt}))
    assert result.data.startswith(magic)
    assert result.mime_type == mime
    assert result.diagnostics.effective_bit_depth == 8


def test_webp_signature():
    """Test WebP container."""
    result = encode(color_rgba(), with_overrides({"format": "webp", "quality": 70}))
    assert result.data[:4] == b"RIFF"
    assert result.data[8:12] == b"WEBP"


def test_encode_does_not_modify_input():
    """Test the rendered buffer passed in is untouched."""
    rgba = gray_rgba()
    before = rgba.copy()
    encode(rgba, with_overrides({"format": "png", "render": {"include_watermark": True}}))
    np.testing.assert_array_equal(rgba, before)


def test_png_dpi_recorded():
    """Test DPI is written into PNG."""
    result = encode(gray_rgba(), with_overrides({"format": "png", "dpi": 300}))
    with Image.open(io.BytesIO(result.data)) as img:
        assert round(img.info["dpi"][0]) == 300


def test_png_16bit_grayscale():
    """Test 16-bit PNG for grayscale output."""
    result = encode(gray_rgba(), with_overrides({"format": "png", "bit_depth": 16}))
    assert result.diagnostics.effective_bit_depth == 16
    with Image.open(io.BytesIO(result.data)) as img:
        assert img.mode in ("I;16", "I")
        assert np.asarray(img).max() == 65535


def test_png_16bit_color_downgraded():
    """Test a 16-bit request for color output falls back to 8-bit."""
    result = encode(color_rgba(), with_overrides({"format": "png", "bit_depth": 16}))
    assert result.diagnostics.effective_bit_depth == 8
    assert any("16-bit PNG" in w for w in result.diagnostics.warnings)
    with Image.open(io.BytesIO(result.data)) as img:
        assert img.mode == "RGB"


def test_quality_clamp_warning():
    """Test out-of-range quality is clamped with a warning."""
    result = encode(gray_rgba(), with_overrides({"format": "jpeg", "quality": 150}))
    assert "Quality 150 clamped to 100" in result.diagnostics.warnings


def test_encode_rejects_bad_buffer():
    """Test non-RGBA input is rejected."""
    with pytest.raises(ValueError):
        encode(np.zeros((4, 4, 3), dtype=np.uint8), with_overrides({"format": "png"}))


def test_encode_rejects_unknown_option_value():
    """Test invalid enumerated options are rejected."""
    with pytest.raises(ValueError):
        encode(gray_rgba(), with_overrides({"format": "gif"}))


# Test TIFF


def test_tiff_lzw_on_float_downgraded():
    """Test LZW on 32-bit float pages falls back to no compression."""
    result = encode(gray_rgba(), with_overrides(
        {"format": "tiff", "bit_depth": 32, "tiff": {"compression": "lzw"}}
    ))
    diag = result.diagnostics
    assert diag.effective_compression == "none"
    assert diag.effective_bit_depth == 32
    assert any(w.startswith("tiff_compression_downgraded") for w in diag.warnings)


def test_tiff_lzw_8bit():
    """Test LZW compression on 8-bit pages."""
    result = encode(gray_rgba(), with_overrides({"format": "tiff", "tiff": {"compression": "lzw"}}))
    assert result.diagnostics.effective_compression == "lzw"
    assert result.diagnostics.warnings == []
    with Image.open(io.BytesIO(result.data)) as img:
        assert img.info.get("compression") == "tiff_lzw"


def test_tiff_deflate_16bit():
    """Test 16-bit deflate pages keep full precision from normalized values."""
    normalized = np.linspace(0.0, 1.0, 12 * 10, dtype=np.float32).reshape(10, 12)
    result = encode(process(normalized), with_overrides(
        {"format": "tiff", "bit_depth": 16, "tiff": {"compression": "deflate"}}
    ), normalized=normalized)
    page = tifffile.imread(io.BytesIO(result.data))
    assert page.dtype == np.uint16
    assert page.max() == 65535
    # More than 256 distinct levels survive
    assert len(np.unique(page)) > 100


def test_tiff_multipage_preserve_and_first_frame():
    """Test page count follows the multipage option."""
    pages = [np.full((4, 6), v, dtype=np.uint8) for v in (10, 20, 30)]
    payload = tiff_bytes(pages)
    preserved = convert_buffer(payload, "stack.tif", with_overrides({"format": "tiff"}))
    with tifffile.TiffFile(io.BytesIO(preserved.data)) as tif:
        assert len(tif.pages) == 3
        assert tif.pages[2].asarray()[0, 0] == 30

    first = convert_buffer(payload, "stack.tif", with_overrides(
        {"format": "tiff", "tiff": {"multipage": "firstFrame"}}
    ))
    with tifffile.TiffFile(io.BytesIO(first.data)) as tif:
        assert len(tif.pages) == 1


# Test FITS


def test_fits_fast_path_reuses_original(gradient_fits):
    """Test an unchanged bare FITS is written byte for byte."""
    result = convert_buffer(gradient_fits, "m42.fits", with_overrides({"format": "fits"}))
    assert result.data == gradient_fits
    assert result.diagnostics.effective_fits_mode == "scientific"
    assert not result.diagnostics.fallback_applied


def test_fits_scientific_round_trip(gradient, wcs_fits):
    """Test scientific FITS keeps physical samples and can drop WCS."""
    result = convert_buffer(wcs_fits, "m31.fits", with_overrides(
        {"format": "fits", "fits": {"preserve_wcs": False}}
    ))
    header, data = read_fits(result.data)
    np.testing.assert_allclose(data, gradient, atol=1e-6)
    assert header["BITPIX"] == -32
    assert "CRVAL1" not in header
    assert header["OBJECT"] == "M31"
    assert any("mode=scientific" in h for h in header["HISTORY"])


def test_fits_scientific_16bit_scaled(gradient, gradient_fits):
    """Test integer BITPIX stores scaled physical values."""
    result = convert_buffer(gradient_fits, "m42.fits", with_overrides(
        {"format": "fits", "fits": {"bitpix": 16}}
    ))
    header, data = read_fits(result.data)
    assert header["BITPIX"] == 16
    np.testing.assert_allclose(data, gradient, atol=1.0)


def test_fits_fallback_for_raster_source(gray_png):
    """Test scientific FITS from a PNG falls back to rendered."""
    result = convert_buffer(gray_png, "ramp.png", with_overrides({"format": "fits"}))
    diag = result.diagnostics
    assert diag.fallback_applied
    assert diag.fallback_reason_code == "scientific_unavailable"
    assert diag.fallback_reason_message_key == "converter.fitsFallbackScientificUnavailable"
    assert diag.requested_fits_mode == "scientific"
    assert diag.effective_fits_mode == "rendered"
    assert not diag.scientific_available
    header, data = read_fits(result.data)
    assert data.shape == (8, 16)
    assert data.max() <= 1.0
    assert any("mode=rendered" in h for h in header["HISTORY"])


def test_fits_fallback_for_decorations(gradient_fits):
    """Test scientific FITS with a watermark falls back to rendered."""
    result = convert_buffer(gradient_fits, "m42.fits", with_overrides(
        {"format": "fits", "render": {"include_watermark": True, "watermark_text": "x"}}
    ))
    diag = result.diagnostics
    assert diag.fallback_applied
    assert diag.fallback_reason_code == "scientific_with_decorations_requires_rendered"
    assert diag.fallback_reason_message_key == "converter.fitsFallbackDecorations"
    assert diag.scientific_available
    assert diag.watermark_applied
    assert result.data != gradient_fits


def test_fits_rendered_rgb_cube():
    """Test rendered RGB cube layout with 8-bit storage."""
    result = encode(color_rgba(), with_overrides({
        "format": "fits",
        "fits": {"mode": "rendered", "color_layout": "rgbCube3d", "bitpix": 8},
    }))
    header, data = read_fits(result.data)
    assert header["NAXIS"] == 3
    assert data.shape == (3, 10, 12)
    assert data.max() <= 255
    assert data.max() > 1


def test_fits_gzip_output(gradient_fits):
    """Test gzip-compressed FITS output, including the fast path."""
    result = convert_buffer(gradient_fits, "m42.fits", with_overrides(
        {"format": "fits", "fits": {"compression": "gzip"}}
    ))
    assert result.data[:2] == b"\x1f\x8b"
    assert result.extension == "fits.gz"
    assert result.diagnostics.effective_compression == "gzip"


def test_fits_tiff_pages_become_cube():
    """Test equal mono TIFF pages are exported as a FITS cube."""
    pages = [np.full((4, 6), v, dtype=np.uint16) for v in (100, 200)]
    result = convert_buffer(tiff_bytes(pages), "pair.tif", with_overrides({"format": "fits"}))
    assert not result.diagnostics.fallback_applied
    _, data = read_fits(result.data)
    assert data.shape == (2, 4, 6)
    assert data[1, 0, 0] == 200


def test_fits_rendered_keeps_source_history():
    """Test an explicit rendered export carries source HISTORY without fallback."""
    source = ExportSource(source_type="raster", source_format="png",
                          history=["stacked 10 frames"])
    result = encode(gray_rgba(), with_overrides({"format": "fits", "fits": {"mode": "rendered"}}),
                    source=source)
    assert not result.diagnostics.fallback_applied
    assert result.diagnostics.effective_fits_mode == "rendered"
    header, _ = read_fits(result.data)
    assert "stacked 10 frames" in list(header["HISTORY"])


# Test annotations


def test_annotations_counted_in_diagnostics(gray_png):
    """Test annotation count is reported."""
    result = convert_buffer(
        gray_png, "ramp.png",
        with_overrides({"format": "png", "render": {"include_annotations": True}}),
        stars=[StarAnnotationPoint(x=4, y=4), StarAnnotationPoint(x=8, y=4, enabled=False)],
    )
    assert result.diagnostics.annotations_drawn == 1


def test_encode_failure_is_constraint_violation(monkeypatch):
    """Test encoder errors surface as EncodeConstraintViolation."""
    from astro_convert import encoder

    def broken(request):
        raise OSError("disk on fire")

    monkeypatch.setitem(encoder.ENCODERS, "png", broken)
    with pytest.raises(EncodeConstraintViolation) as exc_info:
        encode(gray_rgba(), with_overrides({"format": "png"}))
    assert exc_info.value.code == "encode_failed"
