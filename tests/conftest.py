import os

# Credential fields have no defaults (services must fail without secrets).
# Provide test values so Settings() can be constructed in tests.
os.environ.setdefault("REDIS_PASSWORD", "test-password")
os.environ.setdefault("API_KEY", "test-api-key")

import pytest

from ride_sync.session import RideSyncSession
from tests.factories import FakeChannelProvider, FakeClock, RecordingSink


@pytest.fixture
def provider() -> FakeChannelProvider:
    """In-memory channel provider."""
    return FakeChannelProvider()


@pytest.fixture
def sink() -> RecordingSink:
    """Notification sink recording every alert."""
    return RecordingSink()


@pytest.fixture
def clock() -> FakeClock:
    """Clock advancing one second per reading."""
    return FakeClock()


@pytest.fixture
def sync_session(provider, sink, clock) -> RideSyncSession:
    """Ride sync session wired to the fake provider, sink and clock."""
    return RideSyncSession(provider, sink, clock=clock)
