"""WebP decoding (still and animated) backed by the native libwebp libraries.

This package provides:
- Native library resolution and loading (resolver, native)
- Decoding into numpy RGBA frames with timing (decoder, models)
- A self test against a bundled image, and PNG export (export)

Usage:
    from webp_decoder import decode, self_test

    if self_test():
        image = decode(data)
        for frame in image.frames:
            show(frame.image, frame.delay)
"""

from .decoder import (
    decode,
    decode_file,
    decode_url,
    init,
    library_versions,
    read_bytes_from_url,
    self_test,
    self_test_ex,
)
from .errors import (
    CodecUnavailableError,
    FrameDecodeError,
    InvalidImageError,
    LibraryExtractionError,
    MetadataError,
    SelfTestError,
    WebPDecoderError,
)
from .models import AnimationInfo, DecodedAnimation, DecodedFrame

__all__ = [
    "AnimationInfo",
    "CodecUnavailableError",
    "DecodedAnimation",
    "DecodedFrame",
    "FrameDecodeError",
    "InvalidImageError",
    "LibraryExtractionError",
    "MetadataError",
    "SelfTestError",
    "WebPDecoderError",
    "decode",
    "decode_file",
    "decode_url",
    "init",
    "library_versions",
    "read_bytes_from_url",
    "self_test",
    "self_test_ex",
]
