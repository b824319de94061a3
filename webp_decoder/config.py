"""Runtime settings for library resolution.

Settings come from built-in defaults overridden by environment variables, so the
command line (or a host application) can set them before the first decode:

    WEBP_DECODER_DEBUG_LOAD      log every resolution/loading decision at info level
    WEBP_DECODER_SIDE_BY_SIDE    look for the libraries next to the application first
    WEBP_DECODER_LIBRARY_DIR     explicit directory for side-by-side lookup (implies it)
    WEBP_DECODER_EXTRACT_DIR     where bundled libraries are extracted (default: temp dir)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_path(name: str) -> str | None:
    raw = (os.getenv(name) or "").strip()
    return raw or None


@dataclass(frozen=True)
class DecoderSettings:
    debug_load: bool = False
    side_by_side: bool = False
    library_dir: str | None = None
    extract_dir: str | None = None

    DEFAULTS = {
        "debug_load": False,
        "side_by_side": False,
        "library_dir": None,
        "extract_dir": None,
    }

    @classmethod
    def from_env(cls, **overrides: Any) -> DecoderSettings:
        values: dict[str, Any] = {
            "debug_load": _env_flag("WEBP_DECODER_DEBUG_LOAD", cls.DEFAULTS["debug_load"]),
            "side_by_side": _env_flag("WEBP_DECODER_SIDE_BY_SIDE", cls.DEFAULTS["side_by_side"]),
            "library_dir": _env_path("WEBP_DECODER_LIBRARY_DIR"),
            "extract_dir": _env_path("WEBP_DECODER_EXTRACT_DIR"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def side_by_side_enabled(self) -> bool:
        return self.side_by_side or self.library_dir is not None


def get_settings() -> DecoderSettings:
    return DecoderSettings.from_env()
