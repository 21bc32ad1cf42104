"""Single-file conversion: read, render, encode, atomic write."""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

import numpy as np

from .colormaps import colorize
from .config import ExportOptions, StretchOptions, validate_options
from .encoder import encode, output_extension
from .errors import Cancelled
from .models import (
    SOURCE_RASTER,
    AstrometryAnnotation,
    CancellationToken,
    ConversionResult,
    EncodeResult,
    StarAnnotationPoint,
)
from .naming import NamingOptions, output_filename
from .reader import LoadedImage, export_source_for, load
from .stretch import stretch


def _checkpoint(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


def is_identity_stretch(options: StretchOptions) -> bool:
    """True when stretching would leave [0, 1] data unchanged."""
    return (
        options.kind == "linear"
        and options.black_point in (None, 0.0)
        and options.white_point in (None, 1.0)
        and options.gamma == 1.0
        and options.midtone == 0.5
        and options.brightness == 0.0
        and options.contrast == 1.0
        and options.curve_preset == "linear"
        and options.output_black == 0.0
        and options.output_white == 1.0
    )


def render_loaded(loaded: LoadedImage, options: ExportOptions,
                  token: Optional[CancellationToken] = None) -> tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Render the selected frame of a loaded image.

    Raster sources converted without any tone change keep their decoded
    colors. Returns (rgba, normalized); normalized is None in that case.
    """
    if (loaded.metadata.source_type == SOURCE_RASTER and loaded.preview is not None
            and options.colormap == "grayscale" and is_identity_stretch(options.stretch)):
        return loaded.preview, None

    image = loaded.image
    index = min(max(int(options.frame), 0), image.depth - 1)
    normalized = stretch(image.frame(index), None, options.stretch)
    _checkpoint(token)
    return colorize(normalized, options.colormap), normalized


def convert_buffer(payload: bytes, filename: str, options: ExportOptions,
                   stars: Optional[list[StarAnnotationPoint]] = None,
                   astrometry: Optional[list[AstrometryAnnotation]] = None,
                   hdu: Optional[int] = None,
                   token: Optional[CancellationToken] = None) -> EncodeResult:
    """Convert an in-memory image; raises on any failure."""
    validate_options(options)
    loaded = load(payload, filename, hdu=hdu)
    _checkpoint(token)
    rgba, normalized = render_loaded(loaded, options, token)
    source = export_source_for(loaded, stars, astrometry)
    _checkpoint(token)
    return encode(rgba, options, source, filename=filename, normalized=normalized)


def write_atomic(path: Path, data: bytes, token: Optional[CancellationToken] = None) -> None:
    """
    Write bytes through a temp file in the target directory.

    The temp file is removed on any failure, including cancellation
    between the write and the final rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        if os.path.getsize(temp_path) != len(data):
            raise OSError(f"Verification failed: size mismatch writing {path.name}")
        _checkpoint(token)
        os.replace(temp_path, path)
    except BaseException:
        if os.path.exists(temp_path):
            try:
                os.unlink(temp_path)
            except OSError:
                pass
        raise


def get_output_path(input_path: Path, options: ExportOptions, output_dir: Optional[Path],
                    naming: Optional[NamingOptions] = None, index: int = 0,
                    metadata=None) -> Path:
    """Determine output path for a given input file."""
    name = output_filename(input_path.name, output_extension(options), naming, index, metadata)
    directory = output_dir if output_dir is not None else input_path.parent
    return Path(directory) / name


def _output_exists(result: ConversionResult, input_path: Path, options: ExportOptions) -> bool:
    """Mark the result skipped when the target exists; refuse to write over the input."""
    if result.output_path.resolve() == input_path.resolve():
        raise ValueError(f"Output path is the input file itself: {input_path}")
    if result.output_path.exists() and not options.overwrite:
        result.skipped = True
        result.skip_reason = "output exists"
        return True
    return False


def convert_file(input_path: Union[str, Path], options: ExportOptions,
                 output_dir: Optional[Path] = None,
                 naming: Optional[NamingOptions] = None,
                 index: int = 0,
                 token: Optional[CancellationToken] = None,
                 stars: Optional[list[StarAnnotationPoint]] = None,
                 astrometry: Optional[list[AstrometryAnnotation]] = None) -> ConversionResult:
    """
    Convert one file on disk.

    Per-file failures are reported on the result. Cancelled is raised to the
    caller so a batch can stop.
    """
    input_path = Path(input_path)
    result = ConversionResult(input_path=input_path)
    naming = naming or NamingOptions()

    try:
        _checkpoint(token)
        validate_options(options)

        # Template names need metadata, so they are resolved after loading
        if naming.rule != "template":
            result.output_path = get_output_path(input_path, options, output_dir, naming, index)
            if _output_exists(result, input_path, options):
                return result

        if not input_path.exists():
            raise FileNotFoundError(f"Input not found: {input_path}")
        loaded = load(input_path.read_bytes(), input_path.name, str(input_path))
        _checkpoint(token)

        if result.output_path is None:
            result.output_path = get_output_path(
                input_path, options, output_dir, naming, index, loaded.metadata
            )
            if _output_exists(result, input_path, options):
                return result

        rgba, normalized = render_loaded(loaded, options, token)
        source = export_source_for(loaded, stars, astrometry)
        _checkpoint(token)

        encoded = encode(rgba, options, source, filename=input_path.name, normalized=normalized)
        del rgba, normalized, loaded, source
        _checkpoint(token)

        write_atomic(result.output_path, encoded.data, token)
        result.bytes_written = len(encoded.data)
        result.diagnostics = encoded.diagnostics
        result.warnings.extend(encoded.diagnostics.warnings)
        if encoded.diagnostics.fallback_applied:
            result.warnings.append(
                f"FITS fallback to rendered ({encoded.diagnostics.fallback_reason_code})"
            )
        result.success = True
        return result

    except Cancelled:
        raise
    except Exception as e:
        result.error = str(e)
        logging.debug(f"Exception details for {input_path}:", exc_info=True)
        return result
