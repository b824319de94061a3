"""Locate the native libwebp/libwebpdemux libraries.

Resolution only decides *what* to hand to the dynamic loader; loading happens
in :mod:`webp_decoder.native`. For every library the strategies are tried in
order and the first hit wins:

1. side-by-side: ``<app dir>/<platform file name>`` (opt-in, see config)
2. bundled: ``webp_decoder/natives/<platform prefix>/<platform file name>``,
   used in place when it is a plain file, otherwise extracted to a temp dir
3. system: ``ctypes.util.find_library`` or the bare file name

On Windows ``libwebpdemux.dll`` only finds its ``libwebp.dll`` dependency when
both sit in the same folder under their real names, so extracted copies are
moved to ``<extract dir>/<platform prefix>/<file name>`` on every platform but
Linux.
"""

from __future__ import annotations

import contextlib
import ctypes.util
import filecmp
import importlib.resources
import os
import platform
import sys
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from webp_decoder.config import DecoderSettings, get_settings
from webp_decoder.errors import LibraryExtractionError
from webp_decoder.logger import get_logger

from .metrics import metrics

_logger = get_logger("resolver")

MAIN_LIBRARY = "libwebp"
DEMUX_LIBRARY = "libwebpdemux"

# Extracted temp files start with this; stale ones are recognised by it
_TEMP_PREFIX = "webp_decoder"
_MARKER_SUFFIX = ".x"

_ARCH_ALIASES = {
    "amd64": "x86-64",
    "x86_64": "x86-64",
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
    "arm64": "aarch64",
    "aarch64": "aarch64",
}

STRATEGY_SIDE_BY_SIDE = "side_by_side"
STRATEGY_BUNDLED = "bundled"
STRATEGY_SYSTEM = "system"


def _os_key(system: str | None = None) -> str:
    system = system or sys.platform
    if system.startswith("win"):
        return "win32"
    if system == "darwin":
        return "darwin"
    return "linux"


def library_file_name(name: str, system: str | None = None) -> str:
    """Map a logical name like ``libwebp`` to the platform's file name."""
    os_key = _os_key(system)
    if os_key == "win32":
        return f"{name}.dll"
    base = name if name.startswith("lib") else f"lib{name}"
    if os_key == "darwin":
        return f"{base}.dylib"
    return f"{base}.so"


def platform_prefix(system: str | None = None, machine: str | None = None) -> str:
    """Resource directory for the current platform, e.g. ``linux-x86-64``."""
    machine = (machine or platform.machine() or "").lower()
    arch = _ARCH_ALIASES.get(machine, machine or "unknown")
    return f"{_os_key(system)}-{arch}"


def application_dir() -> Path:
    meipass = getattr(sys, "_MEIPASS", None)
    if meipass:
        return Path(meipass)
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    main_file = getattr(sys.modules.get("__main__"), "__file__", None)
    if main_file:
        return Path(main_file).resolve().parent
    return Path.cwd()


def files_equal(path1: Path, path2: Path) -> bool:
    """True if both paths are regular files with identical content."""
    try:
        if not path1.is_file() or not path2.is_file():
            return False
        if os.path.samefile(path1, path2):
            return True
        return filecmp.cmp(path1, path2, shallow=False)
    except OSError:
        return False


@dataclass(frozen=True)
class ResolvedLibrary:
    logical_name: str
    target: str
    strategy: str
    temporary: bool = False


@dataclass(frozen=True)
class ResolvedLibraries:
    main: ResolvedLibrary
    demux: ResolvedLibrary

    def __iter__(self):
        return iter((self.main, self.demux))


def release_temporary(resolved: ResolvedLibrary) -> None:
    """Best-effort removal of an extracted temp file once it has been loaded.

    Loaded libraries cannot be deleted on some platforms; those get a marker
    file so a later process can clean them up.
    """
    if not resolved.temporary:
        return
    path = Path(resolved.target)
    try:
        path.unlink()
        _logger.debug("removed extracted library %s", path)
    except OSError as e:
        _logger.debug("could not remove %s (%s), marking for later cleanup", path, e)
        with contextlib.suppress(OSError):
            Path(f"{path}{_MARKER_SUFFIX}").touch()


def sweep_stale_extractions(directory: Path) -> int:
    """Delete temp files marked by earlier processes. Returns how many were removed."""
    removed = 0
    if not directory.is_dir():
        return removed
    for marker in directory.glob(f"{_TEMP_PREFIX}*{_MARKER_SUFFIX}"):
        stale = marker.with_name(marker.name[: -len(_MARKER_SUFFIX)])
        try:
            if stale.exists():
                stale.unlink()
            marker.unlink()
            removed += 1
        except OSError:
            _logger.debug("stale library still in use: %s", stale)
    return removed


class LibraryResolver:
    """Works out where libwebp and libwebpdemux should be loaded from.

    ``resolve()`` computes the answer once and caches it; concurrent first
    callers block on the lock and share the result. Failures are not cached.
    """

    def __init__(
        self,
        settings: DecoderSettings | None = None,
        *,
        resource_root: Any | None = None,
        system: str | None = None,
        machine: str | None = None,
        app_dir: Path | None = None,
    ):
        self._settings = settings or get_settings()
        self._resource_root = resource_root
        self._system = _os_key(system)
        self._prefix = platform_prefix(system, machine)
        self._app_dir = app_dir
        self._lock = threading.Lock()
        self._resolved: ResolvedLibraries | None = None
        self._swept = False

    @property
    def settings(self) -> DecoderSettings:
        return self._settings

    def _log(self, msg: str, *args: object) -> None:
        if self._settings.debug_load:
            _logger.info(msg, *args)
        else:
            _logger.debug(msg, *args)

    def resolve(self) -> ResolvedLibraries:
        with self._lock:
            if self._resolved is None:
                metrics.inc("resolver.attempts")
                # The demux library depends on the main one, resolve that first
                main = self._resolve_one(MAIN_LIBRARY)
                demux = self._resolve_one(DEMUX_LIBRARY)
                self._resolved = ResolvedLibraries(main=main, demux=demux)
            return self._resolved

    def invalidate(self) -> None:
        """Forget the cached result so the next resolve() starts over."""
        with self._lock:
            self._resolved = None

    def file_name(self, name: str) -> str:
        return library_file_name(name, self._system)

    def _resolve_one(self, name: str) -> ResolvedLibrary:
        file_name = self.file_name(name)
        for strategy in (self._side_by_side, self._bundled, self._system_search):
            resolved = strategy(name, file_name)
            if resolved is not None:
                self._log("resolved %s via %s: %s", name, resolved.strategy, resolved.target)
                return resolved
        raise AssertionError("system search always yields a target")

    def _side_by_side(self, name: str, file_name: str) -> ResolvedLibrary | None:
        if not self._settings.side_by_side_enabled:
            return None
        if self._settings.library_dir:
            base = Path(self._settings.library_dir)
        else:
            base = self._app_dir or application_dir()
        candidate = base / file_name
        if candidate.is_file():
            return ResolvedLibrary(name, str(candidate.resolve()), STRATEGY_SIDE_BY_SIDE)
        self._log("no side-by-side %s in %s", file_name, base)
        return None

    def _bundled_resource(self, file_name: str) -> Any | None:
        root = self._resource_root
        if root is None:
            root = importlib.resources.files("webp_decoder") / "natives"
        resource = root / self._prefix / file_name
        return resource if resource.is_file() else None

    def _bundled(self, name: str, file_name: str) -> ResolvedLibrary | None:
        resource = self._bundled_resource(file_name)
        if resource is None:
            self._log("no bundled %s for %s", file_name, self._prefix)
            return None
        if isinstance(resource, Path):
            # Already a plain file on disk, the loader can use it where it is
            return ResolvedLibrary(name, str(resource.resolve()), STRATEGY_BUNDLED)
        return self._extract(name, file_name, resource)

    def _extract_dir(self) -> Path:
        return Path(self._settings.extract_dir or tempfile.gettempdir())

    def _extract(self, name: str, file_name: str, resource: Any) -> ResolvedLibrary:
        extract_dir = self._extract_dir()
        if not self._swept:
            self._swept = True
            removed = sweep_stale_extractions(extract_dir)
            if removed:
                self._log("removed %d stale extracted libraries from %s", removed, extract_dir)
        try:
            extract_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=_TEMP_PREFIX, suffix=Path(file_name).suffix, dir=extract_dir)
            with os.fdopen(fd, "wb") as f:
                f.write(resource.read_bytes())
        except OSError as e:
            raise LibraryExtractionError(f"Failed extracting {file_name}: {e}") from e

        extracted = Path(tmp_name)
        self._log("extracted %s to %s", file_name, extracted)
        if extracted.name == file_name or self._system == "linux":
            return ResolvedLibrary(name, str(extracted), STRATEGY_BUNDLED, temporary=True)

        # Subfolder per platform, in case both 32 and 64 bit interpreters are used
        target = extract_dir / self._prefix / file_name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            self._log("move: %s -> %s", extracted, target)
            os.replace(extracted, target)
        except OSError as e:
            # The same file may already be there and be in use by another process
            identical = files_equal(extracted, target)
            with contextlib.suppress(OSError):
                extracted.unlink()
            if not identical:
                raise LibraryExtractionError(f"Failed placing {file_name} at {target}: {e}") from e
            self._log("keeping identical %s already in place", target)
        return ResolvedLibrary(name, str(target), STRATEGY_BUNDLED)

    def _system_search(self, name: str, file_name: str) -> ResolvedLibrary:
        short = name[3:] if name.startswith("lib") else name
        found = ctypes.util.find_library(short)
        return ResolvedLibrary(name, found or file_name, STRATEGY_SYSTEM)
