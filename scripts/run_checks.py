#!/usr/bin/env python3
"""Run repository checks: ruff, pyright, pytest and the native self test.

Exits non-zero on the first failing step. The self test needs libwebp and
libwebpdemux; pass --no-native on machines without them.
"""

from __future__ import annotations

import argparse
import subprocess
import sys


def run(cmd: list[str]) -> int:
    print("=>", " ".join(cmd))
    return subprocess.run(cmd, check=False).returncode


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--no-tests", action="store_true", help="Skip running pytest")
    parser.add_argument("--no-native", action="store_true", help="Skip decoding the bundled test image")
    args = parser.parse_args()

    steps: list[tuple[str, list[str]]] = [
        ("ruff", [sys.executable, "-m", "ruff", "check", "webp_decoder", "tests"]),
        # pyright may only be on PATH on Windows
        ("pyright", [sys.executable, "-m", "pyright"] if sys.platform != "win32" else ["pyright"]),
    ]
    if not args.no_tests:
        steps.append(("pytest", [sys.executable, "-m", "pytest", "-q"]))
    if not args.no_native:
        steps.append(("self test", [sys.executable, "-m", "webp_decoder", "--self-test", "--debug-load"]))

    for name, cmd in steps:
        rc = run(cmd)
        if rc != 0:
            print(f"{name} failed (exit {rc})")
            return rc

    print("All checks passed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
