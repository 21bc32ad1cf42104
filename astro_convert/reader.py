"""
Uniform image loading for FITS and raster sources.

read() returns a ScientificImage or raises UnsupportedFormat/CorruptData.
ImageLoader keeps the full result of one load (image, metadata, header,
HDU list, frame provider) and can hand it to the encoder as an ExportSource.
"""

import logging
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional, Protocol, Union

import numpy as np

from . import detect
from .errors import CorruptData
from .fits_reader import decode_hdu, default_image_hdu, scan_structure
from .fits_utils import extract_metadata
from .models import (
    SOURCE_FITS,
    SOURCE_RASTER,
    AstrometryAnnotation,
    ExportSource,
    HDUInfo,
    HeaderKeyword,
    ImageMetadata,
    RasterFrame,
    ScientificImage,
    StarAnnotationPoint,
)
from .raster_reader import TiffFrameProvider, decode_pillow, make_frame, scientific_view


class FrameProvider(Protocol):
    """Lazy, restartable sequence of decoded frames."""

    page_count: int

    def get_headers(self, index: int) -> list[HeaderKeyword]: ...
    def get_frame(self, index: int) -> RasterFrame: ...
    def __iter__(self) -> Iterator[RasterFrame]: ...


class FitsFrameProvider:
    """Frames of a FITS cube exposed through the FrameProvider protocol."""

    def __init__(self, image: ScientificImage, keywords: list[HeaderKeyword]):
        self._image = image
        self._keywords = keywords
        self.page_count = image.depth

    def get_headers(self, index: int) -> list[HeaderKeyword]:
        self._image.frame(index)
        return list(self._keywords)

    def get_frame(self, index: int) -> RasterFrame:
        return make_frame(np.asarray(self._image.frame(index)), self._image.bit_depth)

    def __len__(self) -> int:
        return self.page_count

    def __iter__(self) -> Iterator[RasterFrame]:
        for index in range(self.page_count):
            yield self.get_frame(index)


@dataclass
class LoadedImage:
    """Everything produced by a single load."""

    image: ScientificImage
    metadata: ImageMetadata
    keywords: list[HeaderKeyword]
    source_format: str
    payload: bytes
    hdus: list[HDUInfo] = field(default_factory=list)
    frame_provider: Optional[FrameProvider] = None
    preview: Optional[np.ndarray] = None  # decoded RGBA for raster sources


def _decompress(payload: bytes) -> bytes:
    try:
        return detect.decompress_if_gzip(payload)
    except (OSError, EOFError, zlib.error) as e:
        raise CorruptData(f"Cannot decompress gzip stream: {e}", 0) from e


def _metadata(image: ScientificImage, keywords: list[HeaderKeyword], filename: str,
              filepath: Optional[str], file_size: int, source_type: str,
              source_format: str, page_count: int = 1) -> ImageMetadata:
    return ImageMetadata(
        filename=filename,
        filepath=filepath,
        file_size=file_size,
        source_type=source_type,
        source_format=source_format,
        width=image.width,
        height=image.height,
        depth=image.depth,
        bit_depth=image.bit_depth,
        sample_format=image.sample_format,
        orientation=image.orientation,
        page_count=page_count,
        **extract_metadata(keywords, image.width, image.height, filename),
    )


def _load_fits(payload: bytes, filename: str, filepath: Optional[str],
               hdu: Optional[int]) -> LoadedImage:
    raw = _decompress(payload)
    hdus = scan_structure(raw)
    index = default_image_hdu(hdus) if hdu is None else hdu
    if not 0 <= index < len(hdus):
        raise IndexError(f"HDU {index} out of range ({len(hdus)} HDUs)")
    image, keywords = decode_hdu(raw, hdus[index])
    metadata = _metadata(image, keywords, filename, filepath, len(payload),
                         SOURCE_FITS, "fits", page_count=image.depth)
    provider = FitsFrameProvider(image, keywords) if image.depth > 1 else None
    return LoadedImage(
        image=image,
        metadata=metadata,
        keywords=keywords,
        source_format="fits",
        payload=payload,
        hdus=hdus,
        frame_provider=provider,
    )


def _load_raster(payload: bytes, kind: str, filename: str,
                 filepath: Optional[str]) -> LoadedImage:
    provider = None
    if kind == "tiff":
        provider = TiffFrameProvider(payload)
        frame = provider.get_frame(0)
        keywords = provider.get_headers(0)
        orientation = "top-down"
    else:
        frame, keywords, info = decode_pillow(payload, kind)
        orientation = "top-down" if info["orientation"] == 1 else f"exif-{info['orientation']}"

    image = ScientificImage(
        samples=scientific_view(frame.pixels),
        bit_depth=frame.bit_depth,
        sample_format=frame.sample_format,
        orientation=orientation,
    )
    page_count = provider.page_count if provider else 1
    metadata = _metadata(image, keywords, filename, filepath, len(payload),
                         SOURCE_RASTER, kind, page_count=page_count)
    return LoadedImage(
        image=image,
        metadata=metadata,
        keywords=keywords,
        source_format=kind,
        payload=payload,
        frame_provider=provider,
        preview=frame.rgba,
    )


def load(payload: bytes, filename: str = "buffer", filepath: Optional[str] = None,
         hdu: Optional[int] = None) -> LoadedImage:
    """Detect the container and decode it completely, or raise."""
    detected = detect.detect_format(payload, filename)
    if detected.source_type == SOURCE_FITS:
        return _load_fits(payload, filename, filepath, hdu)
    return _load_raster(payload, detected.kind, filename, filepath)


def read(payload: bytes, filename: Optional[str] = None,
         hdu: Optional[int] = None) -> ScientificImage:
    """Decode a payload into a ScientificImage."""
    return load(payload, filename or "buffer", hdu=hdu).image


def read_path(path: Union[str, Path], hdu: Optional[int] = None) -> ScientificImage:
    path = Path(path)
    return load(path.read_bytes(), path.name, str(path), hdu=hdu).image


class ImageLoader:
    """
    Holds the result of the most recent load.

    A load either fully replaces the current state or leaves it untouched
    when it raises. reset() releases all buffers.
    """

    def __init__(self):
        self._loaded: Optional[LoadedImage] = None

    def load_from_path(self, path: Union[str, Path], hdu: Optional[int] = None) -> LoadedImage:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Image not found: {path}")
        loaded = load(path.read_bytes(), path.name, str(path), hdu=hdu)
        self._replace(loaded)
        return loaded

    def load_from_buffer(self, payload: bytes, filename: str = "buffer",
                         hdu: Optional[int] = None) -> LoadedImage:
        loaded = load(bytes(payload), filename, None, hdu=hdu)
        self._replace(loaded)
        return loaded

    def select_hdu(self, index: int) -> LoadedImage:
        """Decode another HDU of the currently loaded FITS payload."""
        current = self._require()
        if current.metadata.source_type != SOURCE_FITS:
            raise ValueError("HDU selection requires a FITS source")
        loaded = load(current.payload, current.metadata.filename,
                      current.metadata.filepath, hdu=index)
        self._replace(loaded)
        return loaded

    def _replace(self, loaded: LoadedImage) -> None:
        previous = self._loaded
        self._loaded = loaded
        if previous is not None and isinstance(previous.frame_provider, TiffFrameProvider):
            previous.frame_provider.release()
        logging.debug(f"Loaded {loaded.metadata.filename} "
                      f"({loaded.image.width}x{loaded.image.height}x{loaded.image.depth})")

    def _require(self) -> LoadedImage:
        if self._loaded is None:
            raise RuntimeError("No image loaded")
        return self._loaded

    def reset(self) -> None:
        """Release every buffer held by the loader."""
        if self._loaded is not None and isinstance(self._loaded.frame_provider, TiffFrameProvider):
            self._loaded.frame_provider.release()
        self._loaded = None

    @property
    def loaded(self) -> Optional[LoadedImage]:
        return self._loaded

    @property
    def image(self) -> Optional[ScientificImage]:
        return self._loaded.image if self._loaded else None

    @property
    def metadata(self) -> Optional[ImageMetadata]:
        return self._loaded.metadata if self._loaded else None

    @property
    def keywords(self) -> list[HeaderKeyword]:
        return list(self._loaded.keywords) if self._loaded else []

    @property
    def hdus(self) -> list[HDUInfo]:
        return list(self._loaded.hdus) if self._loaded else []

    @property
    def frame_provider(self) -> Optional[FrameProvider]:
        return self._loaded.frame_provider if self._loaded else None

    def export_source(self, stars: Optional[list[StarAnnotationPoint]] = None,
                      astrometry: Optional[list[AstrometryAnnotation]] = None,
                      source_file_id: Optional[str] = None) -> ExportSource:
        """Bundle the loaded image for the encoder."""
        return export_source_for(self._require(), stars, astrometry, source_file_id)


def export_source_for(loaded: LoadedImage,
                      stars: Optional[list[StarAnnotationPoint]] = None,
                      astrometry: Optional[list[AstrometryAnnotation]] = None,
                      source_file_id: Optional[str] = None) -> ExportSource:
    """ExportSource for a LoadedImage, splitting out COMMENT/HISTORY cards."""
    is_fits = loaded.metadata.source_type == SOURCE_FITS
    keywords = [kw for kw in loaded.keywords if kw.key not in ("COMMENT", "HISTORY")]
    comments = [str(kw.value) for kw in loaded.keywords if kw.key == "COMMENT"]
    history = [str(kw.value) for kw in loaded.keywords if kw.key == "HISTORY"]

    original_bytes = None
    original_bitpix = None
    if is_fits:
        hdu_index = loaded.image.hdu_index or 0
        # Only a bare primary image can be reused byte for byte
        if hdu_index == 0 and len(loaded.hdus) == 1:
            original_bytes = loaded.payload
            original_bitpix = loaded.hdus[0].bitpix

    return ExportSource(
        source_type=loaded.metadata.source_type,
        source_format=loaded.source_format,
        source_file_id=source_file_id or loaded.metadata.filepath or loaded.metadata.filename,
        image=loaded.image,
        keywords=keywords if is_fits else [],
        comments=comments if is_fits else [],
        history=history if is_fits else [],
        original_bytes=original_bytes,
        original_bitpix=original_bitpix,
        metadata=loaded.metadata,
        stars=list(stars or []),
        astrometry=list(astrometry or []),
        frame_provider=loaded.frame_provider,
    )
