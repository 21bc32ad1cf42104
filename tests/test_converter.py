"""Tests for converter module."""

import pytest

from astro_convert.config import StretchOptions, with_overrides
from astro_convert.converter import (
    convert_file,
    get_output_path,
    is_identity_stretch,
    render_loaded,
    write_atomic,
)
from astro_convert.errors import Cancelled
from astro_convert.models import CancellationToken
from astro_convert.naming import NamingOptions
from astro_convert.reader import load


PNG = with_overrides({"format": "png"})


@pytest.fixture
def fits_file(tmp_path, gradient_fits):
    path = tmp_path / "M42_light.fits"
    path.write_bytes(gradient_fits)
    return path


# Test convert_file


def test_convert_writes_output(tmp_path, fits_file):
    """Test a FITS file converts to PNG in the output directory."""
    out_dir = tmp_path / "out"
    result = convert_file(fits_file, PNG, out_dir)
    assert result.success, result.error
    assert result.output_path == out_dir / "M42_light.png"
    data = result.output_path.read_bytes()
    assert data.startswith(b"\x89PNG")
    assert result.bytes_written == len(data)
    assert result.diagnostics.effective_bit_depth == 8


def test_convert_next_to_input_by_default(fits_file):
    """Test output lands beside the input without an output directory."""
    result = convert_file(fits_file, PNG)
    assert result.output_path.parent == fits_file.parent


def test_skip_existing_output(tmp_path, fits_file):
    """Test existing outputs are skipped unless overwrite is set."""
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    (out_dir / "M42_light.png").write_bytes(b"old")

    result = convert_file(fits_file, PNG, out_dir)
    assert result.skipped
    assert result.skip_reason == "output exists"
    assert (out_dir / "M42_light.png").read_bytes() == b"old"

    result = convert_file(fits_file, with_overrides({"format": "png", "overwrite": True}), out_dir)
    assert result.success
    assert (out_dir / "M42_light.png").read_bytes().startswith(b"\x89PNG")


def test_output_onto_input_refused(fits_file, gradient_fits):
    """Test an output path equal to the input fails and leaves the input intact."""
    options = with_overrides({
        "format": "fits",
        "overwrite": True,
        "fits": {"mode": "rendered", "bitpix": 8},
    })
    result = convert_file(fits_file, options)
    assert not result.success
    assert not result.skipped
    assert "input file itself" in result.error
    assert fits_file.read_bytes() == gradient_fits

    result = convert_file(fits_file, with_overrides({"format": "fits"}))
    assert not result.skipped
    assert "input file itself" in result.error


def test_template_naming_uses_metadata(tmp_path, fits_file):
    """Test template names are resolved from the loaded header."""
    result = convert_file(fits_file, PNG, tmp_path / "out", NamingOptions(rule="template"))
    assert result.success, result.error
    assert result.output_path.name == "M42_Ha_300s_001.png"


def test_corrupt_input_reported(tmp_path):
    """Test a corrupt file is a per-file failure, not an exception."""
    path = tmp_path / "bad.fits"
    path.write_bytes(b"SIMPLE  =                    T" + b" " * 50)
    result = convert_file(path, PNG, tmp_path / "out")
    assert not result.success
    assert not result.skipped
    assert result.error
    assert not (tmp_path / "out" / "bad.png").exists()


def test_missing_input_reported(tmp_path):
    """Test a missing input file."""
    result = convert_file(tmp_path / "gone.fits", PNG, tmp_path / "out")
    assert not result.success
    assert "Input not found" in result.error


def test_fallback_reported_as_warning(tmp_path, gray_png):
    """Test FITS fallback shows up in result warnings."""
    path = tmp_path / "ramp.png"
    path.write_bytes(gray_png)
    result = convert_file(path, with_overrides({"format": "fits"}), tmp_path / "out")
    assert result.success
    assert any("scientific_unavailable" in w for w in result.warnings)


def test_cancelled_token_raises(tmp_path, fits_file):
    """Test cancellation propagates and leaves no output."""
    token = CancellationToken()
    token.cancel()
    with pytest.raises(Cancelled):
        convert_file(fits_file, PNG, tmp_path / "out", token=token)
    assert not (tmp_path / "out" / "M42_light.png").exists()


# Test write_atomic


def test_write_atomic(tmp_path):
    """Test bytes land at the target with no temp file left."""
    target = tmp_path / "sub" / "file.bin"
    write_atomic(target, b"payload")
    assert target.read_bytes() == b"payload"
    assert list(target.parent.glob("*.tmp")) == []


def test_write_atomic_cancelled_removes_temp(tmp_path):
    """Test cancellation before rename removes the temp file."""
    token = CancellationToken()
    token.cancel()
    target = tmp_path / "file.bin"
    with pytest.raises(Cancelled):
        write_atomic(target, b"payload", token)
    assert not target.exists()
    assert list(tmp_path.glob("*.tmp")) == []


# Test helpers


def test_get_output_path(tmp_path):
    """Test extension and directory of the output path."""
    path = get_output_path(tmp_path / "a.fits", with_overrides({"format": "jpeg"}), None)
    assert path == tmp_path / "a.jpg"
    path = get_output_path(tmp_path / "a.png", with_overrides(
        {"format": "fits", "fits": {"compression": "gzip"}}), tmp_path / "o")
    assert path == tmp_path / "o" / "a.fits.gz"


def test_identity_stretch():
    """Test identity detection of stretch options."""
    assert is_identity_stretch(StretchOptions())
    assert not is_identity_stretch(StretchOptions(kind="asinh"))
    assert not is_identity_stretch(StretchOptions(gamma=2.0))


def test_render_loaded_keeps_raster_colors(color_png):
    """Test raster sources keep decoded colors under an identity stretch."""
    loaded = load(color_png, "red.png")
    rgba, normalized = render_loaded(loaded, PNG)
    assert normalized is None
    assert tuple(rgba[0, 0]) == (200, 0, 50, 255)

    rgba, normalized = render_loaded(loaded, with_overrides({"stretch": {"kind": "sqrt"}}))
    assert normalized is not None
    assert rgba[0, 0, 0] == rgba[0, 0, 1]
