# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from pathlib import Path
from types import SimpleNamespace

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from pushcast.core.dispatcher import DispatchResolver  # noqa: E402
from pushcast.core.registry import PolicyRegistry  # noqa: E402
from pushcast.infra.metrics import get_metrics_collector  # noqa: E402


class RecordingTransport:
    """Transport double that records every trigger call."""

    def __init__(self, fail_with: Exception | None = None):
        self.calls: list[dict] = []
        self.fail_with = fail_with

    async def trigger(self, channels, event_name, data, socket_id=None):
        self.calls.append({
            "channels": channels,
            "event_name": event_name,
            "data": data,
            "socket_id": socket_id,
        })
        if self.fail_with is not None:
            raise self.fail_with


class CountingRegistry(PolicyRegistry):
    """Registry that counts metadata reads per key."""

    def __init__(self):
        super().__init__()
        self.reads: list = []

    def get(self, key, handler):
        self.reads.append(key)
        return super().get(key, handler)


def _make_request(headers: dict | None = None, **attrs):
    """Minimal request double: a headers mapping plus arbitrary attributes."""
    return SimpleNamespace(headers=headers or {}, state=SimpleNamespace(), **attrs)


@pytest.fixture
def registry():
    """Fresh policy registry per test"""
    return CountingRegistry()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def failing_transport():
    """Factory for transports whose trigger raises ``exc``"""
    return lambda exc: RecordingTransport(fail_with=exc)


@pytest.fixture
def dispatcher(registry, transport):
    return DispatchResolver(registry, transport)


@pytest.fixture
def make_request():
    """Factory for minimal request doubles"""
    return _make_request


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield
