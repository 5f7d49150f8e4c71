"""
Shared fakes for hostfacts tests: a scripted transport, a static prober
and a fixed clock.
"""

import threading
from datetime import datetime, timezone

import pytest

from hostfacts.transport import RemoteTransport, TransportError

FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

_MISSING = object()


class FakeTransport(RemoteTransport):
    """
    Answers capabilities from canned data.

    Values may be data, an exception instance (raised) or a callable taking
    (host, params). per_host entries override the shared responses.
    """

    def __init__(self, responses=None, per_host=None):
        self.responses = responses or {}
        self.per_host = per_host or {}
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()

    def query(self, host, capability, params=None):
        with self._lock:
            self.calls.append((host, capability, params))

        value = self.per_host.get(host, {}).get(capability, self.responses.get(capability, _MISSING))
        if value is _MISSING:
            raise TransportError(f"no fake response for {capability}")
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return value(host, params)
        return value

    def capabilities_for(self, host):
        return [c for h, c, _ in self.calls if h == host]

    def close(self):
        self.closed = True


class StaticProber:
    """Every host is up except the ones listed as down"""

    def __init__(self, down=()):
        self.down = set(down)
        self.calls = []
        self._lock = threading.Lock()

    def probe(self, host):
        with self._lock:
            self.calls.append(host)
        return host not in self.down


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def make_prober():
    return StaticProber


@pytest.fixture
def clock():
    return lambda: FIXED_NOW
