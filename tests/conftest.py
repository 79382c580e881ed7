"""Shared fixtures for rate limiting tests."""

import pytest

from ratekeeper.app.middleware.rate_limit import InMemoryCounterStore, RequestContext


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def context():
    return RequestContext(source_ip="203.0.113.7", path="/api/bookings", method="GET")
