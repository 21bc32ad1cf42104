"""
Exception types raised while reading, rendering and encoding images.
"""

from typing import Optional


class ConversionError(Exception):
    """Base class for all conversion errors."""

    pass


class UnsupportedFormat(ConversionError):
    """Container or sample code is not recognized."""

    pass


class CorruptData(ConversionError):
    """Malformed header record or truncated data unit."""

    def __init__(self, message: str, offset: Optional[int] = None):
        self.offset = offset
        if offset is not None:
            message = f"{message} (at byte offset {offset})"
        super().__init__(message)


class EncodeConstraintViolation(ConversionError):
    """Requested option combination cannot be encoded as asked."""

    def __init__(self, message: str, code: str):
        self.code = code
        super().__init__(message)


class Cancelled(ConversionError):
    """Cooperative abort requested through a cancellation token."""

    pass
