"""Decode animated WebP images through the native libwebp animation decoder.

Usage:
    from webp_decoder import decode, CodecUnavailableError, WebPDecoderError

    try:
        image = decode(data)
    except CodecUnavailableError:
        ...  # libwebp/libwebpdemux missing, decoding is not supported here
    except WebPDecoderError:
        ...  # bad input

Each call owns its native copy of the input and its native decoder, and both
are released before the call returns or raises. The result holds no native
references.
"""

from __future__ import annotations

import importlib.resources
import urllib.request
from os import PathLike

from webp_decoder.errors import FrameDecodeError, InvalidImageError, SelfTestError, WebPDecoderError
from webp_decoder.logger import get_logger

from . import native
from .metrics import metrics
from .models import DecodedAnimation, DecodedFrame
from .native import AnimDecoder, NativeBuffer, WebPLibrary

_logger = get_logger("decoder")

TEST_IMAGE = "test.webp"
# What the bundled test image must decode to
TEST_EXPECTED = {
    "canvas_width": 16,
    "canvas_height": 16,
    "frame_count": 2,
    "frames": 2,
    "loop_count": 1,
    "delays": [480, 1280],
    "timestamps": [480, 1760],
}

_URL_TIMEOUT = 30.0


def init() -> WebPLibrary:
    """Resolve and load the native libraries now instead of on first decode.

    Raises CodecUnavailableError (or its LibraryExtractionError subclass) when
    that is not possible.
    """
    return native.get_library()


def library_versions() -> dict[str, str]:
    return native.get_library().versions()


def decode(data: bytes | bytearray | memoryview, library: WebPLibrary | None = None) -> DecodedAnimation:
    """Decode a WebP image (animated or still) from its raw bytes.

    Raises WebPDecoderError (InvalidImageError, MetadataError or
    FrameDecodeError) when the decoder encounters an issue, and
    CodecUnavailableError when the native libraries cannot be used.
    ``decode.failures`` counts every call that raised after the library was
    available, MemoryError included.
    """
    if library is None:
        library = native.get_library()
    # Rejects ints and other non buffers instead of zero filling
    payload = memoryview(data).tobytes()
    metrics.inc("decode.calls")
    try:
        with metrics.timed("decode.duration"):
            return _decode_with(library, payload)
    except Exception as e:
        metrics.inc("decode.failures")
        _logger.debug("decode failed (%d bytes): %r", len(payload), e)
        raise


def _decode_with(library: WebPLibrary, payload: bytes) -> DecodedAnimation:
    if not payload:
        raise InvalidImageError("Failed creating decoder, empty input")

    frames: list[DecodedFrame] = []
    with NativeBuffer(library, payload) as buffer, AnimDecoder(library, buffer) as decoder:
        info = decoder.info()
        prev_timestamp = 0
        while decoder.has_more_frames():
            if len(frames) >= info.frame_count:
                raise FrameDecodeError(
                    len(frames), f"Decoder reports more than the announced {info.frame_count} frames"
                )
            view = decoder.next_frame(len(frames))
            delay = view.timestamp - prev_timestamp
            if delay < 0:
                metrics.inc("decode.negative_delay")
                _logger.warning(
                    "frame %d timestamp %d is before the previous one (%d)", view.index, view.timestamp, prev_timestamp
                )
            prev_timestamp = view.timestamp
            frames.append(DecodedFrame(image=view.copy_pixels(), timestamp=view.timestamp, delay=delay))

    if len(frames) != info.frame_count:
        raise FrameDecodeError(len(frames), f"Decoded {len(frames)} of {info.frame_count} frames")

    return DecodedAnimation(
        frames=tuple(frames),
        canvas_width=info.canvas_width,
        canvas_height=info.canvas_height,
        loop_count=info.loop_count,
        background_color=info.background_color,
        frame_count=info.frame_count,
    )


def decode_file(path: str | PathLike[str], library: WebPLibrary | None = None) -> DecodedAnimation:
    with open(path, "rb") as f:
        data = f.read()
    return decode(data, library)


def read_bytes_from_url(url: str, timeout: float = _URL_TIMEOUT) -> bytes:
    with urllib.request.urlopen(url, timeout=timeout) as response:
        return response.read()


def decode_url(url: str, timeout: float = _URL_TIMEOUT, library: WebPLibrary | None = None) -> DecodedAnimation:
    """Fetch the image at ``url`` and decode it.

    Fetch problems surface as OSError (urllib.error.URLError is one).
    """
    return decode(read_bytes_from_url(url, timeout), library)


def read_test_image() -> bytes:
    return (importlib.resources.files("webp_decoder") / "resources" / TEST_IMAGE).read_bytes()


def _describe_mismatch(image: DecodedAnimation) -> str | None:
    actual = {
        "canvas_width": image.canvas_width,
        "canvas_height": image.canvas_height,
        "frame_count": image.frame_count,
        "frames": len(image.frames),
        "loop_count": image.loop_count,
        "delays": image.delays,
        "timestamps": [f.timestamp for f in image.frames],
    }
    wrong = {k: v for k, v in actual.items() if TEST_EXPECTED[k] != v}
    if not wrong:
        return None
    return ", ".join(f"{k}={v!r} (expected {TEST_EXPECTED[k]!r})" for k, v in wrong.items())


def self_test_ex(library: WebPLibrary | None = None) -> DecodedAnimation:
    """Decode the bundled test image to check the native libraries work.

    Raises SelfTestError if it decodes to something unexpected, which points
    at a wrong or broken native library rather than at any input.
    """
    image = decode(read_test_image(), library)
    mismatch = _describe_mismatch(image)
    if mismatch:
        raise SelfTestError(f"Unexpected decode result: {mismatch}")
    _logger.debug("self test ok: %s", image)
    return image


def self_test(library: WebPLibrary | None = None) -> bool:
    """Same as self_test_ex() but returns False instead of raising."""
    try:
        self_test_ex(library)
        return True
    except (OSError, WebPDecoderError, SelfTestError) as e:
        # CodecUnavailableError is an OSError as well
        _logger.debug("self test failed: %s", e)
        return False

