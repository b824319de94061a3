"""Write decoded frames out as PNG files using pyvips."""

from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Any

import numpy as np

from webp_decoder.logger import get_logger

from .models import RGBA_CHANNELS, DecodedAnimation, DecodedFrame

_logger = get_logger("export")

_RGBA_DIMS = 3

_pyvips: Any | None = None


def _get_pyvips_module() -> Any:
    global _pyvips
    if _pyvips is None:
        import pyvips  # type: ignore

        _pyvips = pyvips
    return _pyvips


def rgba_to_png_bytes(rgba: np.ndarray) -> bytes:
    """Encode an RGBA numpy array of shape (h, w, 4) to PNG bytes."""
    if rgba.ndim != _RGBA_DIMS or rgba.shape[2] != RGBA_CHANNELS:
        raise ValueError("expected RGBA numpy array with shape (h, w, 4)")
    if rgba.dtype != np.uint8:
        rgba = rgba.astype(np.uint8)

    pyvips = _get_pyvips_module()
    h, w, _ = rgba.shape
    # pyvips expects a contiguous bytes buffer in C order
    img: Any = pyvips.Image.new_from_memory(rgba.tobytes(), w, h, RGBA_CHANNELS, "uchar")
    with contextlib.suppress(Exception):
        img = img.copy(interpretation="srgb")
    out = img.write_to_buffer(".png")
    return out if isinstance(out, bytes) else bytes(out)


def frame_to_png_bytes(frame: DecodedFrame) -> bytes:
    if frame.image is None:
        raise ValueError("frame has no image data")
    return rgba_to_png_bytes(frame.image)


def save_frames(animation: DecodedAnimation, out_dir: str | Path, stem: str = "frame") -> list[Path]:
    """Write each frame as ``<stem>_<index>_<delay>ms.png``. Frames without an image are skipped."""
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for index, frame in enumerate(animation.frames):
        if frame.image is None:
            _logger.warning("frame %d has no image, not written", index)
            continue
        path = out / f"{stem}_{index:04d}_{frame.delay}ms.png"
        path.write_bytes(frame_to_png_bytes(frame))
        written.append(path)
    _logger.debug("wrote %d frames to %s", len(written), out)
    return written
