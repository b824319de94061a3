"""ctypes bindings for the libwebp animation decoder.

Native memory never leaves this module untyped: the input copy is a
``NativeBuffer``, the decoder is an ``AnimDecoder`` and each frame comes back
as a ``FrameView`` borrowed from the decoder. Buffers and decoders are context
managers whose ``close()`` releases the native object exactly once, so
nesting them in one ``with`` statement gives the required teardown order
(decoder first, then the bytes it reads from).

The loaded libraries are process-wide and never unloaded. ``get_library()``
resolves and loads them on first use.
"""

from __future__ import annotations

import ctypes
import threading
from collections.abc import Callable
from typing import Any

import numpy as np

from webp_decoder.errors import CodecUnavailableError, FrameDecodeError, InvalidImageError, MetadataError
from webp_decoder.logger import get_logger
from webp_decoder.resolver import LibraryResolver, ResolvedLibraries, release_temporary

from .metrics import metrics
from .models import RGBA_CHANNELS, AnimationInfo, bgcolor_to_rgba

_logger = get_logger("native")

WEBP_DEMUX_ABI_VERSION = 0x0107
# WebPAnimDecoder first shipped with libwebp 0.5.0
MIN_DEMUX_VERSION = 0x000500


class WebPData(ctypes.Structure):
    _fields_ = [("bytes", ctypes.c_void_p), ("size", ctypes.c_size_t)]


class WebPAnimInfo(ctypes.Structure):
    _fields_ = [
        ("canvas_width", ctypes.c_uint32),
        ("canvas_height", ctypes.c_uint32),
        ("loop_count", ctypes.c_uint32),
        ("bgcolor", ctypes.c_uint32),
        ("frame_count", ctypes.c_uint32),
        ("pad", ctypes.c_uint32 * 4),
    ]


def format_version(version: int) -> str:
    return f"{(version >> 16) & 0xFF}.{(version >> 8) & 0xFF}.{version & 0xFF}"


def _bind(lib: Any, name: str, restype: Any, argtypes: list[Any]) -> Any:
    try:
        fn = getattr(lib, name)
    except AttributeError as e:
        raise CodecUnavailableError(f"{name} not found in {getattr(lib, '_name', lib)}") from e
    fn.restype = restype
    fn.argtypes = argtypes
    return fn


class WebPLibrary:
    """The loaded libwebp + libwebpdemux pair with typed entry points.

    Methods take and return plain ints for native pointers and report native
    failure the way the C API does (None/False); the handle classes below turn
    that into exceptions.
    """

    def __init__(self, main: Any, demux: Any):
        self._main = main
        self._demux = demux
        self._malloc = _bind(main, "WebPMalloc", ctypes.c_void_p, [ctypes.c_size_t])
        self._free = _bind(main, "WebPFree", None, [ctypes.c_void_p])
        self._decoder_version = _bind(main, "WebPGetDecoderVersion", ctypes.c_int, [])
        self._demux_version = _bind(demux, "WebPGetDemuxVersion", ctypes.c_int, [])
        self._new = _bind(
            demux,
            "WebPAnimDecoderNewInternal",
            ctypes.c_void_p,
            [ctypes.POINTER(WebPData), ctypes.c_void_p, ctypes.c_int],
        )
        self._get_info = _bind(
            demux, "WebPAnimDecoderGetInfo", ctypes.c_int, [ctypes.c_void_p, ctypes.POINTER(WebPAnimInfo)]
        )
        self._has_more = _bind(demux, "WebPAnimDecoderHasMoreFrames", ctypes.c_int, [ctypes.c_void_p])
        self._get_next = _bind(
            demux,
            "WebPAnimDecoderGetNext",
            ctypes.c_int,
            [ctypes.c_void_p, ctypes.POINTER(ctypes.c_void_p), ctypes.POINTER(ctypes.c_int)],
        )
        self._delete = _bind(demux, "WebPAnimDecoderDelete", None, [ctypes.c_void_p])

        demux_version = self.demux_version()
        if demux_version < MIN_DEMUX_VERSION:
            raise CodecUnavailableError(
                f"libwebpdemux {format_version(demux_version)} has no compatible animation decoder"
            )

    def decoder_version(self) -> int:
        return int(self._decoder_version())

    def demux_version(self) -> int:
        return int(self._demux_version())

    def versions(self) -> dict[str, str]:
        return {
            "decoder": format_version(self.decoder_version()),
            "demux": format_version(self.demux_version()),
        }

    def malloc(self, size: int) -> int | None:
        return self._malloc(size)

    def free(self, ptr: int) -> None:
        self._free(ptr)

    def copy_into(self, ptr: int, data: bytes) -> None:
        ctypes.memmove(ptr, data, len(data))

    def anim_decoder_new(self, data_ptr: int, size: int) -> int | None:
        data = WebPData(data_ptr, size)
        return self._new(ctypes.byref(data), None, WEBP_DEMUX_ABI_VERSION)

    def anim_decoder_get_info(self, decoder: int) -> AnimationInfo | None:
        info = WebPAnimInfo()
        if not self._get_info(decoder, ctypes.byref(info)):
            return None
        return AnimationInfo(
            canvas_width=info.canvas_width,
            canvas_height=info.canvas_height,
            loop_count=info.loop_count,
            background_color=bgcolor_to_rgba(info.bgcolor),
            frame_count=info.frame_count,
        )

    def anim_decoder_has_more_frames(self, decoder: int) -> bool:
        return bool(self._has_more(decoder))

    def anim_decoder_get_next(self, decoder: int) -> tuple[int | None, int] | None:
        buf = ctypes.c_void_p()
        timestamp = ctypes.c_int()
        if not self._get_next(decoder, ctypes.byref(buf), ctypes.byref(timestamp)):
            return None
        return buf.value, timestamp.value

    def anim_decoder_delete(self, decoder: int) -> None:
        self._delete(decoder)

    def read_pixels(self, ptr: int, width: int, height: int) -> np.ndarray:
        raw = ctypes.string_at(ptr, width * height * RGBA_CHANNELS)
        return np.frombuffer(raw, dtype=np.uint8).reshape(height, width, RGBA_CHANNELS).copy()


class NativeBuffer:
    """A WebPMalloc'd copy of the encoded input."""

    def __init__(self, library: WebPLibrary, data: bytes):
        self._library = library
        self.size = len(data)
        ptr = library.malloc(self.size)
        if not ptr:
            raise MemoryError(f"WebPMalloc({self.size}) failed")
        self._ptr: int | None = ptr
        metrics.inc("native.malloc")
        try:
            library.copy_into(ptr, data)
        except BaseException:
            self.close()
            raise

    @property
    def ptr(self) -> int:
        if self._ptr is None:
            raise RuntimeError("native buffer already freed")
        return self._ptr

    @property
    def closed(self) -> bool:
        return self._ptr is None

    def close(self) -> None:
        ptr, self._ptr = self._ptr, None
        if ptr is not None:
            self._library.free(ptr)
            metrics.inc("native.free")

    def __enter__(self) -> NativeBuffer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class FrameView:
    """Borrowed view of the decoder's canvas for one frame.

    Only valid until the decoder fetches the next frame or is closed, so the
    pixels must be copied out with ``copy_pixels()`` before that.
    """

    __slots__ = ("_decoder", "_generation", "_ptr", "index", "timestamp")

    def __init__(self, decoder: AnimDecoder, ptr: int | None, timestamp: int, index: int, generation: int):
        self._decoder = decoder
        self._ptr = ptr
        self._generation = generation
        self.timestamp = timestamp
        self.index = index

    @property
    def valid(self) -> bool:
        return not self._decoder.closed and self._decoder._generation == self._generation

    def copy_pixels(self) -> np.ndarray | None:
        if not self.valid:
            raise RuntimeError(f"frame {self.index} buffer is no longer valid")
        if not self._ptr:
            return None
        info = self._decoder.animation_info
        return self._decoder._library.read_pixels(self._ptr, info.canvas_width, info.canvas_height)


class AnimDecoder:
    """A native WebPAnimDecoder reading from a ``NativeBuffer``.

    The buffer must stay open for the whole lifetime of the decoder.
    """

    def __init__(self, library: WebPLibrary, buffer: NativeBuffer):
        self._library = library
        self._buffer = buffer
        self._info: AnimationInfo | None = None
        self._generation = 0
        handle = library.anim_decoder_new(buffer.ptr, buffer.size)
        if not handle:
            raise InvalidImageError("Failed creating decoder, invalid image?")
        self._handle: int | None = handle
        metrics.inc("decoder.created")

    @property
    def handle(self) -> int:
        if self._handle is None:
            raise RuntimeError("decoder already deleted")
        return self._handle

    @property
    def closed(self) -> bool:
        return self._handle is None

    @property
    def animation_info(self) -> AnimationInfo:
        if self._info is None:
            raise RuntimeError("info() has not been fetched yet")
        return self._info

    def info(self) -> AnimationInfo:
        info = self._library.anim_decoder_get_info(self.handle)
        if info is None:
            raise MetadataError("Failed getting decoder info")
        self._info = info
        return info

    def has_more_frames(self) -> bool:
        return self._library.anim_decoder_has_more_frames(self.handle)

    def next_frame(self, index: int) -> FrameView:
        handle = self.handle
        # Any view handed out before is stale from here on
        self._generation += 1
        result = self._library.anim_decoder_get_next(handle)
        if result is None:
            raise FrameDecodeError(index)
        ptr, timestamp = result
        return FrameView(self, ptr, timestamp, index, self._generation)

    def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            self._generation += 1
            self._library.anim_decoder_delete(handle)
            metrics.inc("decoder.deleted")

    def __enter__(self) -> AnimDecoder:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def open_library(resolved: ResolvedLibraries) -> WebPLibrary:
    """Load both resolved libraries and bind the entry points.

    Extracted temp copies are released whether or not loading worked.
    """
    try:
        try:
            # Global, so the demux library can find its libwebp dependency
            main = ctypes.CDLL(resolved.main.target, mode=ctypes.RTLD_GLOBAL)
            demux = ctypes.CDLL(resolved.demux.target)
        except OSError as e:
            raise CodecUnavailableError(f"Failed loading native WebP libraries: {e}") from e
        library = WebPLibrary(main, demux)
    finally:
        for entry in resolved:
            release_temporary(entry)
    _logger.debug("loaded libwebp %(decoder)s, libwebpdemux %(demux)s", library.versions())
    return library


class LibraryHolder:
    """Init-once access to the process-wide ``WebPLibrary``.

    The first caller resolves and loads while holding the lock; everyone else
    waits and then shares the result. Only success is cached, a failed
    attempt is raised to its caller and retried by the next one.
    """

    def __init__(
        self,
        resolver: LibraryResolver | None = None,
        opener: Callable[[ResolvedLibraries], WebPLibrary] = open_library,
    ):
        self._resolver = resolver
        self._opener = opener
        self._lock = threading.Lock()
        self._library: WebPLibrary | None = None

    @property
    def loaded(self) -> bool:
        return self._library is not None

    def get(self) -> WebPLibrary:
        library = self._library
        if library is not None:
            return library
        with self._lock:
            if self._library is None:
                if self._resolver is None:
                    self._resolver = LibraryResolver()
                try:
                    resolved = self._resolver.resolve()
                    try:
                        self._library = self._opener(resolved)
                    except CodecUnavailableError:
                        # Extracted copies are gone after a failed load, resolve afresh next time
                        self._resolver.invalidate()
                        raise
                except CodecUnavailableError as e:
                    _logger.warning("native WebP codec unavailable: %s", e)
                    raise
            return self._library


_holder = LibraryHolder()


def get_library() -> WebPLibrary:
    return _holder.get()
