"""Common fixtures for unit tests."""

from __future__ import annotations

from collections.abc import Generator
from unittest.mock import MagicMock

import pytest

from runtracer import tracer as rt_tracer
from runtracer._internal import _context
from runtracer.client import Client
from runtracer.configuration import Configuration
from runtracer.tracer import Tracer

_ENV_VARS = (
    "API_KEY",
    "ENDPOINT",
    "PROJECT",
    "TRACING",
    "TENANT_ID",
    "BATCH_SIZE",
    "FLUSH_INTERVAL",
    "TIMEOUT",
    "MAX_RETRIES",
    "MAX_PENDING_ENTRIES",
    "SHUTDOWN_TIMEOUT",
)


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for name in _ENV_VARS:
        monkeypatch.delenv(f"RUNTRACER_{name}", raising=False)
    _context.clear()
    yield
    _context.clear()
    rt_tracer.reset(timeout=1.0)


@pytest.fixture
def mock_client() -> MagicMock:
    return MagicMock(spec=Client)


@pytest.fixture
def tracer(mock_client: MagicMock) -> Generator[Tracer, None, None]:
    # A long flush interval keeps the timer out of the way; tests drain
    # explicitly with flush() or shutdown().
    tracer = Tracer(
        Configuration(api_key="test-key", project="unit-tests", flush_interval=60),
        client=mock_client,
    )
    yield tracer
    tracer.shutdown(timeout=1.0)


@pytest.fixture
def disabled_tracer(mock_client: MagicMock) -> Generator[Tracer, None, None]:
    tracer = Tracer(
        Configuration(api_key="test-key", tracing_enabled=False, flush_interval=60),
        client=mock_client,
    )
    yield tracer
    tracer.shutdown(timeout=1.0)
