"""Pytest configuration.

Most tests drive the decoder against ``FakeWebPLibrary`` so they run without
libwebp installed. Tests that need the real native libraries take the
``native_library`` fixture, which skips when the codec is unavailable.
"""

from __future__ import annotations

import pytest
from fake_native import FakeWebPLibrary

from webp_decoder.errors import CodecUnavailableError
from webp_decoder.metrics import metrics


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def fake_library() -> FakeWebPLibrary:
    return FakeWebPLibrary()


@pytest.fixture(scope="session")
def native_library():
    from webp_decoder import native

    try:
        return native.get_library()
    except CodecUnavailableError as e:
        pytest.skip(f"native libwebp/libwebpdemux not available: {e}")
