from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

RGBA_CHANNELS = 4


def bgcolor_to_rgba(value: int) -> tuple[int, int, int, int]:
    """Split the native background colour (bytes stored as [B, G, R, A]) into RGBA."""
    return (value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF, (value >> 24) & 0xFF


@dataclass(frozen=True)
class AnimationInfo:
    canvas_width: int
    canvas_height: int
    loop_count: int
    background_color: tuple[int, int, int, int]
    frame_count: int


@dataclass(frozen=True)
class DecodedFrame:
    """A single decoded frame.

    ``image`` is a full-canvas RGBA array of shape (height, width, 4), or None
    if the native layer handed back no buffer. ``timestamp`` counts from the
    start of the animation until the frame is shown and ``delay`` is how long
    it stays up, both in ms.
    """

    image: np.ndarray | None = field(compare=False, repr=False)
    timestamp: int
    delay: int

    def same_pixels(self, other: DecodedFrame) -> bool:
        if self.image is None or other.image is None:
            return self.image is None and other.image is None
        return bool(np.array_equal(self.image, other.image))


@dataclass(frozen=True)
class DecodedAnimation:
    """A decoded image: every frame (just one for still images) plus meta info."""

    frames: tuple[DecodedFrame, ...]
    canvas_width: int
    canvas_height: int
    loop_count: int
    background_color: tuple[int, int, int, int]
    frame_count: int

    @property
    def info(self) -> AnimationInfo:
        return AnimationInfo(
            canvas_width=self.canvas_width,
            canvas_height=self.canvas_height,
            loop_count=self.loop_count,
            background_color=self.background_color,
            frame_count=self.frame_count,
        )

    @property
    def duration(self) -> int:
        return self.frames[-1].timestamp if self.frames else 0

    @property
    def delays(self) -> list[int]:
        return [f.delay for f in self.frames]

    def __str__(self) -> str:
        return (
            f"{self.canvas_width} x {self.canvas_height} / {self.loop_count} loops / "
            f"{self.frame_count} frames {self.delays}"
        )
