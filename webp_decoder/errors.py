"""Exception types.

Decode failures (``WebPDecoderError``) are per-call and depend on the input.
``CodecUnavailableError`` means the native libraries could not be found or
loaded, which no input can fix; it is deliberately not a ``WebPDecoderError``
so the two are never caught together by accident.
"""

from __future__ import annotations


class WebPDecoderError(Exception):
    """The native decoder rejected the input or failed while decoding it."""


class InvalidImageError(WebPDecoderError):
    pass


class MetadataError(WebPDecoderError):
    pass


class FrameDecodeError(WebPDecoderError):
    def __init__(self, frame_index: int, message: str | None = None):
        self.frame_index = frame_index
        super().__init__(message or f"Error decoding frame {frame_index}")


class CodecUnavailableError(OSError):
    """The native libraries are missing, failed to load or lack expected symbols."""


class LibraryExtractionError(CodecUnavailableError):
    """A bundled library could not be extracted or placed for loading."""


class SelfTestError(RuntimeError):
    """The bundled test image decoded, but not to the expected result."""
