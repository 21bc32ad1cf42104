"""Astronomical image reader, stretch pipeline and multi-format converter."""

__version__ = "1.0.0"

from .batch import BatchOrchestrator, find_images, print_summary
from .config import DEFAULTS, ExportOptions, preset_options, with_overrides
from .converter import convert_buffer, convert_file, get_output_path
from .encoder import encode, estimate_file_size, resolve_bit_depth
from .errors import (
    Cancelled,
    ConversionError,
    CorruptData,
    EncodeConstraintViolation,
    UnsupportedFormat,
)
from .models import (
    BatchTask,
    CancellationToken,
    ConversionResult,
    EncodeResult,
    ExportDiagnostics,
    ExportSource,
    ImageMetadata,
    ScientificImage,
)
from .naming import NamingOptions
from .pipeline import process
from .reader import ImageLoader, read, read_path

__all__ = [
    "__version__",
    "BatchOrchestrator",
    "BatchTask",
    "CancellationToken",
    "Cancelled",
    "ConversionError",
    "ConversionResult",
    "CorruptData",
    "DEFAULTS",
    "EncodeConstraintViolation",
    "EncodeResult",
    "ExportDiagnostics",
    "ExportOptions",
    "ExportSource",
    "ImageLoader",
    "ImageMetadata",
    "NamingOptions",
    "ScientificImage",
    "UnsupportedFormat",
    "convert_buffer",
    "convert_file",
    "encode",
    "estimate_file_size",
    "find_images",
    "get_output_path",
    "preset_options",
    "print_summary",
    "process",
    "read",
    "read_path",
    "resolve_bit_depth",
    "with_overrides",
]
