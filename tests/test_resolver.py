from __future__ import annotations

import threading
import zipfile
from pathlib import Path

import pytest

from webp_decoder import resolver as res
from webp_decoder.config import DecoderSettings
from webp_decoder.errors import CodecUnavailableError, LibraryExtractionError
from webp_decoder.metrics import metrics

MAIN_BYTES = b"\x7fELF fake libwebp"
DEMUX_BYTES = b"\x7fELF fake libwebpdemux"


@pytest.fixture(autouse=True)
def _no_system_lookup(monkeypatch):
    monkeypatch.setattr(res.ctypes.util, "find_library", lambda name: None)


def _zip_root(tmp_path: Path, prefix: str, files: dict[str, bytes]) -> zipfile.Path:
    archive = tmp_path / "bundle.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        for name, data in files.items():
            zf.writestr(f"natives/{prefix}/{name}", data)
    return zipfile.Path(archive) / "natives"


@pytest.mark.parametrize(
    ("system", "expected"),
    [
        ("linux", ("libwebp.so", "libwebpdemux.so")),
        ("win32", ("libwebp.dll", "libwebpdemux.dll")),
        ("darwin", ("libwebp.dylib", "libwebpdemux.dylib")),
    ],
)
def test_library_file_name(system, expected):
    assert (res.library_file_name("libwebp", system), res.library_file_name("libwebpdemux", system)) == expected


def test_library_file_name_adds_lib_prefix_for_bare_names():
    assert res.library_file_name("webp", "linux") == "libwebp.so"
    assert res.library_file_name("webp", "win32") == "webp.dll"


def test_platform_prefix():
    assert res.platform_prefix("linux", "x86_64") == "linux-x86-64"
    assert res.platform_prefix("win32", "AMD64") == "win32-x86-64"
    assert res.platform_prefix("darwin", "arm64") == "darwin-aarch64"
    assert res.platform_prefix("linux", "riscv64") == "linux-riscv64"


def test_system_search_is_the_fallback(tmp_path):
    resolver = res.LibraryResolver(DecoderSettings(), resource_root=tmp_path, system="linux", machine="x86_64")

    resolved = resolver.resolve()

    assert resolved.main == res.ResolvedLibrary("libwebp", "libwebp.so", res.STRATEGY_SYSTEM)
    assert resolved.demux.target == "libwebpdemux.so"


def test_system_search_prefers_find_library(tmp_path, monkeypatch):
    monkeypatch.setattr(res.ctypes.util, "find_library", lambda name: f"lib{name}.so.7")
    resolver = res.LibraryResolver(DecoderSettings(), resource_root=tmp_path, system="linux", machine="x86_64")

    resolved = resolver.resolve()

    assert resolved.main.target == "libwebp.so.7"
    assert resolved.demux.target == "libwebpdemux.so.7"


def test_side_by_side_wins_when_enabled(tmp_path):
    app_dir = tmp_path / "app"
    app_dir.mkdir()
    (app_dir / "libwebp.so").write_bytes(MAIN_BYTES)
    (app_dir / "libwebpdemux.so").write_bytes(DEMUX_BYTES)
    settings = DecoderSettings(library_dir=str(app_dir))

    resolved = res.LibraryResolver(settings, resource_root=tmp_path, system="linux", machine="x86_64").resolve()

    assert resolved.main.strategy == res.STRATEGY_SIDE_BY_SIDE
    assert Path(resolved.main.target) == (app_dir / "libwebp.so").resolve()
    assert Path(resolved.demux.target) == (app_dir / "libwebpdemux.so").resolve()


def test_side_by_side_uses_app_dir(tmp_path):
    (tmp_path / "libwebp.dll").write_bytes(MAIN_BYTES)
    settings = DecoderSettings(side_by_side=True)
    resolver = res.LibraryResolver(
        settings, resource_root=tmp_path / "none", system="win32", machine="AMD64", app_dir=tmp_path
    )

    resolved = resolver.resolve()

    assert resolved.main.strategy == res.STRATEGY_SIDE_BY_SIDE
    # Only libwebp sits next to the app, libwebpdemux falls through to the system
    assert resolved.demux.strategy == res.STRATEGY_SYSTEM
    assert resolved.demux.target == "libwebpdemux.dll"


def test_side_by_side_is_opt_in(tmp_path):
    (tmp_path / "libwebp.so").write_bytes(MAIN_BYTES)
    resolver = res.LibraryResolver(
        DecoderSettings(), resource_root=tmp_path / "none", system="linux", machine="x86_64", app_dir=tmp_path
    )

    assert resolver.resolve().main.strategy == res.STRATEGY_SYSTEM


def test_bundled_plain_file_is_used_in_place(tmp_path):
    natives = tmp_path / "natives"
    (natives / "linux-x86-64").mkdir(parents=True)
    (natives / "linux-x86-64" / "libwebp.so").write_bytes(MAIN_BYTES)
    (natives / "linux-x86-64" / "libwebpdemux.so").write_bytes(DEMUX_BYTES)

    resolved = res.LibraryResolver(DecoderSettings(), resource_root=natives, system="linux", machine="x86_64").resolve()

    assert resolved.main.strategy == res.STRATEGY_BUNDLED
    assert not resolved.main.temporary
    assert Path(resolved.main.target) == (natives / "linux-x86-64" / "libwebp.so").resolve()


def test_bundled_archive_is_extracted_to_temp_file_on_linux(tmp_path):
    root = _zip_root(tmp_path, "linux-x86-64", {"libwebp.so": MAIN_BYTES, "libwebpdemux.so": DEMUX_BYTES})
    extract_dir = tmp_path / "extract"
    settings = DecoderSettings(extract_dir=str(extract_dir))

    resolved = res.LibraryResolver(settings, resource_root=root, system="linux", machine="x86_64").resolve()

    main = Path(resolved.main.target)
    assert resolved.main.strategy == res.STRATEGY_BUNDLED
    assert resolved.main.temporary
    assert main.parent == extract_dir
    assert main.name.startswith("webp_decoder")
    assert main.suffix == ".so"
    assert main.read_bytes() == MAIN_BYTES
    assert Path(resolved.demux.target).read_bytes() == DEMUX_BYTES


def test_bundled_archive_is_renamed_on_windows(tmp_path):
    root = _zip_root(tmp_path, "win32-x86-64", {"libwebp.dll": MAIN_BYTES, "libwebpdemux.dll": DEMUX_BYTES})
    extract_dir = tmp_path / "extract"
    settings = DecoderSettings(extract_dir=str(extract_dir))

    resolved = res.LibraryResolver(settings, resource_root=root, system="win32", machine="AMD64").resolve()

    assert Path(resolved.main.target) == extract_dir / "win32-x86-64" / "libwebp.dll"
    assert Path(resolved.demux.target) == extract_dir / "win32-x86-64" / "libwebpdemux.dll"
    assert not resolved.main.temporary
    assert Path(resolved.main.target).read_bytes() == MAIN_BYTES
    # Both libraries end up side by side, no temp files left behind
    assert sorted(p.name for p in extract_dir.iterdir()) == ["win32-x86-64"]


def test_identical_file_in_use_counts_as_success(tmp_path, monkeypatch):
    root = _zip_root(tmp_path, "win32-x86-64", {"libwebp.dll": MAIN_BYTES, "libwebpdemux.dll": DEMUX_BYTES})
    extract_dir = tmp_path / "extract"
    placed = extract_dir / "win32-x86-64"
    placed.mkdir(parents=True)
    (placed / "libwebp.dll").write_bytes(MAIN_BYTES)
    (placed / "libwebpdemux.dll").write_bytes(DEMUX_BYTES)

    def _in_use(src, dst):
        raise PermissionError(13, "The process cannot access the file", str(dst))

    monkeypatch.setattr(res.os, "replace", _in_use)
    settings = DecoderSettings(extract_dir=str(extract_dir))

    resolved = res.LibraryResolver(settings, resource_root=root, system="win32", machine="AMD64").resolve()

    assert Path(resolved.main.target) == placed / "libwebp.dll"
    assert [p.name for p in extract_dir.iterdir()] == ["win32-x86-64"]


def test_different_file_in_use_fails(tmp_path, monkeypatch):
    root = _zip_root(tmp_path, "win32-x86-64", {"libwebp.dll": MAIN_BYTES, "libwebpdemux.dll": DEMUX_BYTES})
    extract_dir = tmp_path / "extract"
    placed = extract_dir / "win32-x86-64"
    placed.mkdir(parents=True)
    (placed / "libwebp.dll").write_bytes(b"an older libwebp build")

    def _in_use(src, dst):
        raise PermissionError(13, "The process cannot access the file", str(dst))

    monkeypatch.setattr(res.os, "replace", _in_use)
    resolver = res.LibraryResolver(
        DecoderSettings(extract_dir=str(extract_dir)), resource_root=root, system="win32", machine="AMD64"
    )

    with pytest.raises(LibraryExtractionError, match="libwebp.dll") as excinfo:
        resolver.resolve()
    assert isinstance(excinfo.value, CodecUnavailableError)


def test_extraction_io_error_is_raised(tmp_path):
    root = _zip_root(tmp_path, "linux-x86-64", {"libwebp.so": MAIN_BYTES})
    not_a_dir = tmp_path / "file"
    not_a_dir.write_bytes(b"x")
    resolver = res.LibraryResolver(
        DecoderSettings(extract_dir=str(not_a_dir / "sub")), resource_root=root, system="linux", machine="x86_64"
    )

    with pytest.raises(LibraryExtractionError, match="Failed extracting libwebp.so"):
        resolver.resolve()


def test_resolve_is_cached_and_counted_once(tmp_path):
    resolver = res.LibraryResolver(DecoderSettings(), resource_root=tmp_path, system="linux", machine="x86_64")

    first = resolver.resolve()
    second = resolver.resolve()

    assert first is second
    assert metrics.counter("resolver.attempts") == 1


def test_invalidate_forces_a_fresh_resolution(tmp_path):
    resolver = res.LibraryResolver(DecoderSettings(), resource_root=tmp_path, system="linux", machine="x86_64")

    first = resolver.resolve()
    resolver.invalidate()
    second = resolver.resolve()

    assert first is not second
    assert first == second
    assert metrics.counter("resolver.attempts") == 2


def test_concurrent_resolve_computes_once(tmp_path):
    resolver = res.LibraryResolver(DecoderSettings(), resource_root=tmp_path, system="linux", machine="x86_64")
    barrier = threading.Barrier(6)
    results = []

    def _worker():
        barrier.wait()
        results.append(resolver.resolve())

    threads = [threading.Thread(target=_worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 6
    assert all(r is results[0] for r in results)
    assert metrics.counter("resolver.attempts") == 1


def test_failed_resolve_is_retried(tmp_path):
    root = _zip_root(tmp_path, "linux-x86-64", {"libwebp.so": MAIN_BYTES, "libwebpdemux.so": DEMUX_BYTES})
    blocker = tmp_path / "extract"
    blocker.write_bytes(b"x")
    resolver = res.LibraryResolver(
        DecoderSettings(extract_dir=str(blocker)), resource_root=root, system="linux", machine="x86_64"
    )

    with pytest.raises(LibraryExtractionError):
        resolver.resolve()
    blocker.unlink()

    assert resolver.resolve().main.temporary
    assert metrics.counter("resolver.attempts") == 2


def test_release_temporary_deletes_extracted_file(tmp_path):
    path = tmp_path / "webp_decoder123.so"
    path.write_bytes(MAIN_BYTES)

    res.release_temporary(res.ResolvedLibrary("libwebp", str(path), res.STRATEGY_BUNDLED, temporary=True))

    assert not path.exists()


def test_release_temporary_keeps_non_temporary_files(tmp_path):
    path = tmp_path / "libwebp.so"
    path.write_bytes(MAIN_BYTES)

    res.release_temporary(res.ResolvedLibrary("libwebp", str(path), res.STRATEGY_BUNDLED))

    assert path.exists()


def test_release_temporary_marks_file_it_cannot_delete(tmp_path, monkeypatch):
    path = tmp_path / "webp_decoder123.dll"
    path.write_bytes(MAIN_BYTES)
    original_unlink = Path.unlink

    def _locked_unlink(self, missing_ok=False):
        if self == path:
            raise PermissionError(13, "in use", str(self))
        return original_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", _locked_unlink)

    res.release_temporary(res.ResolvedLibrary("libwebp", str(path), res.STRATEGY_BUNDLED, temporary=True))

    assert path.exists()
    assert Path(f"{path}.x").exists()


def test_sweep_removes_marked_files(tmp_path):
    stale = tmp_path / "webp_decoder42.dll"
    stale.write_bytes(MAIN_BYTES)
    Path(f"{stale}.x").touch()
    unrelated = tmp_path / "other.dll"
    unrelated.write_bytes(b"keep")

    assert res.sweep_stale_extractions(tmp_path) == 1

    assert not stale.exists()
    assert not Path(f"{stale}.x").exists()
    assert unrelated.exists()


def test_sweep_runs_before_extraction(tmp_path):
    extract_dir = tmp_path / "extract"
    extract_dir.mkdir()
    stale = extract_dir / "webp_decoder42.so"
    stale.write_bytes(MAIN_BYTES)
    Path(f"{stale}.x").touch()
    root = _zip_root(tmp_path, "linux-x86-64", {"libwebp.so": MAIN_BYTES, "libwebpdemux.so": DEMUX_BYTES})

    res.LibraryResolver(
        DecoderSettings(extract_dir=str(extract_dir)), resource_root=root, system="linux", machine="x86_64"
    ).resolve()

    assert not stale.exists()


def test_files_equal(tmp_path):
    a = tmp_path / "a"
    b = tmp_path / "b"
    c = tmp_path / "c"
    a.write_bytes(b"same")
    b.write_bytes(b"same")
    c.write_bytes(b"diff")

    assert res.files_equal(a, b)
    assert res.files_equal(a, a)
    assert not res.files_equal(a, c)
    assert not res.files_equal(a, tmp_path / "missing")
    assert not res.files_equal(tmp_path, a)


def test_application_dir_prefers_frozen_bundle(monkeypatch, tmp_path):
    monkeypatch.setattr(res.sys, "_MEIPASS", str(tmp_path), raising=False)
    assert res.application_dir() == tmp_path


def test_debug_load_logs_decisions_at_info(tmp_path, monkeypatch):
    messages = []

    class _FakeLogger:
        def info(self, msg, *args):
            messages.append(msg % args)

        def debug(self, msg, *args):
            pass

    monkeypatch.setattr(res, "_logger", _FakeLogger())
    resolver = res.LibraryResolver(
        DecoderSettings(debug_load=True), resource_root=tmp_path, system="linux", machine="x86_64"
    )

    resolver.resolve()

    assert any("resolved libwebp via system" in m for m in messages)
    assert any("resolved libwebpdemux via system" in m for m in messages)
