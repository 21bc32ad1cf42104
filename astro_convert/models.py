"""
Shared data models for image conversion.

All dataclasses are defined here to prevent circular imports
and centralize data structure definitions.
"""

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np

from .config import ExportOptions
from .errors import Cancelled

HeaderValue = Union[str, int, float, bool, None]

SAMPLE_SIGNED = "signed-int"
SAMPLE_UNSIGNED = "unsigned-int"
SAMPLE_FLOAT = "float"

SOURCE_FITS = "fits"
SOURCE_RASTER = "raster"

# Scientific image models


@dataclass
class ScientificImage:
    """Decoded pixel data as physical float samples."""

    samples: np.ndarray  # float32, shape (depth, height, width)
    bit_depth: int
    sample_format: str  # SAMPLE_SIGNED, SAMPLE_UNSIGNED or SAMPLE_FLOAT
    orientation: str = "top-down"  # FITS rows run "bottom-up"
    hdu_index: Optional[int] = None

    def __post_init__(self):
        samples = np.asarray(self.samples, dtype=np.float32)
        if samples.ndim == 2:
            samples = samples[np.newaxis, :, :]
        if samples.ndim != 3:
            raise ValueError(f"Expected 2D or 3D samples, got {samples.ndim}D")
        samples.flags.writeable = False
        self.samples = samples

    @property
    def depth(self) -> int:
        return self.samples.shape[0]

    @property
    def height(self) -> int:
        return self.samples.shape[1]

    @property
    def width(self) -> int:
        return self.samples.shape[2]

    @property
    def dims(self) -> tuple[int, int]:
        """(width, height) of a single frame."""
        return self.width, self.height

    def frame(self, index: int = 0) -> np.ndarray:
        """Samples of one frame as a read-only (height, width) view."""
        if not 0 <= index < self.depth:
            raise IndexError(f"Frame {index} out of range (depth={self.depth})")
        return self.samples[index]

    def with_samples(self, samples: np.ndarray) -> "ScientificImage":
        """New image sharing this one's descriptors (copy-on-edit)."""
        return ScientificImage(
            samples=np.array(samples, dtype=np.float32, copy=True),
            bit_depth=self.bit_depth,
            sample_format=self.sample_format,
            orientation=self.orientation,
            hdu_index=self.hdu_index,
        )


@dataclass
class HeaderKeyword:
    """One header card. Order and duplicates are significant."""

    key: str
    value: HeaderValue = None
    comment: Optional[str] = None


@dataclass
class HDUInfo:
    """Structure of one header/data unit found in a FITS stream."""

    index: int
    type: str  # "Image", "CompressedImage", "Table", "BinaryTable", "Unknown"
    has_data: bool
    header_offset: int = 0
    data_offset: int = 0
    data_size: int = 0
    bitpix: int = 0
    shape: tuple = ()


@dataclass(frozen=True)
class ImageMetadata:
    """Summary of a loaded image. Rebuilt, never mutated, on reload."""

    filename: str
    filepath: Optional[str]
    file_size: int
    source_type: str  # SOURCE_FITS or SOURCE_RASTER
    source_format: str  # "fits", "png", "jpeg", "webp", "tiff", "bmp"
    width: int
    height: int
    depth: int = 1
    bit_depth: int = 8
    sample_format: str = SAMPLE_UNSIGNED
    orientation: str = "top-down"
    frame_type: str = "unknown"
    frame_type_source: str = "fallback"  # "header", "filename" or "fallback"
    object: Optional[str] = None
    date_obs: Optional[str] = None
    exptime: Optional[float] = None
    filter: Optional[str] = None
    instrument: Optional[str] = None
    telescope: Optional[str] = None
    detector: Optional[str] = None
    gain: Optional[float] = None
    ccd_temp: Optional[float] = None
    ra: Optional[float] = None
    dec: Optional[float] = None
    airmass: Optional[float] = None
    has_wcs: bool = False
    wcs_center: Optional[tuple[float, float]] = None  # (ra, dec) degrees
    page_count: int = 1


# Raster models


@dataclass
class RasterFrame:
    """One decoded raster page."""

    width: int
    height: int
    rgba: np.ndarray  # uint8, shape (height, width, 4)
    pixels: np.ndarray  # native samples, (height, width) or (height, width, channels)
    channels: int
    bit_depth: int
    sample_format: str


# Annotation models


@dataclass
class StarAnnotationPoint:
    """A star marker placed by the user or by detection."""

    x: float
    y: float
    source: str = "manual"  # "manual" or "detected"
    enabled: bool = True
    radius: Optional[float] = None


@dataclass
class AstrometryAnnotation:
    """An object identified by plate solving."""

    type: str  # e.g. "ngc", "ic", "hd", "bright", "other"
    names: list[str]
    pixelx: float
    pixely: float
    radius: Optional[float] = None


# Export models


@dataclass
class ExportSource:
    """Everything the encoder may need beyond the rendered RGBA buffer."""

    source_type: str = SOURCE_RASTER
    source_format: str = "png"
    source_file_id: Optional[str] = None
    image: Optional[ScientificImage] = None
    keywords: list[HeaderKeyword] = field(default_factory=list)
    comments: list[str] = field(default_factory=list)
    history: list[str] = field(default_factory=list)
    original_bytes: Optional[bytes] = None  # untouched FITS payload
    original_bitpix: Optional[int] = None
    metadata: Optional[ImageMetadata] = None
    stars: list[StarAnnotationPoint] = field(default_factory=list)
    astrometry: list[AstrometryAnnotation] = field(default_factory=list)
    frame_provider: Optional[Any] = None  # FrameProvider

    @property
    def has_scientific_data(self) -> bool:
        """True when genuine physical samples back this source."""
        if self.image is None or self.image.samples.size == 0:
            return False
        if self.source_type == SOURCE_FITS:
            return True
        return self.source_type == SOURCE_RASTER and self.source_format == "tiff"


@dataclass
class ExportDiagnostics:
    """Everything the encoder changed relative to the request."""

    fallback_applied: bool = False
    fallback_reason_code: Optional[str] = None
    fallback_reason_message_key: Optional[str] = None
    requested_fits_mode: Optional[str] = None
    effective_fits_mode: Optional[str] = None
    scientific_available: bool = False
    effective_bit_depth: Optional[int] = None
    effective_compression: Optional[str] = None
    annotations_drawn: int = 0
    watermark_applied: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass
class EncodeResult:
    """Encoded bytes plus diagnostics."""

    data: bytes
    extension: str
    mime_type: str
    diagnostics: ExportDiagnostics = field(default_factory=ExportDiagnostics)


# Batch models

TASK_PENDING = "pending"
TASK_RUNNING = "running"
TASK_COMPLETED = "completed"
TASK_CANCELLED = "cancelled"
TASK_FAILED = "failed"

TERMINAL_STATUSES = frozenset({TASK_COMPLETED, TASK_CANCELLED, TASK_FAILED})


class CancellationToken:
    """Cooperative abort flag shared between caller and worker."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Checkpoint: raise Cancelled once the token is signalled."""
        if self._event.is_set():
            raise Cancelled("Operation cancelled")


@dataclass
class ConversionResult:
    """Result of a single file conversion."""

    input_path: Path
    output_path: Optional[Path] = None
    success: bool = False
    skipped: bool = False
    skip_reason: str = ""
    error: str = ""
    warnings: list = field(default_factory=list)
    diagnostics: Optional[ExportDiagnostics] = None
    bytes_written: int = 0


@dataclass
class BatchTask:
    """State of one batch conversion job."""

    id: str
    type: str = "convert"
    status: str = TASK_PENDING
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    progress: int = 0  # 0-100
    error: Optional[str] = None
    file_errors: dict[str, str] = field(default_factory=dict)
    outputs: list[Path] = field(default_factory=list)
    files: list[Path] = field(default_factory=list)
    options: Optional[ExportOptions] = None
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def processed(self) -> int:
        return self.completed + self.failed + self.skipped

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
