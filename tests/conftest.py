import pytest

from directory import SessionDirectory
from membership import MembershipManager
from rate_limiter import RateLimiter
from store import SessionStore
from tests.fakes import FakeClock, FakeWebSocket

RELAY_SERVERS = [{"urls": "stun:stun.example.org:3478"}]


# ===== Fixtures =====


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def directory(clock):
    return SessionDirectory(clock=clock)


@pytest.fixture
def membership(directory):
    return MembershipManager(directory, default_capacity=3, relay_servers=RELAY_SERVERS, empty_room_grace=0)


@pytest.fixture
def store(directory, membership, clock):
    """Session store with fast timings and no background sweeps running."""
    return SessionStore(
        directory=directory,
        rate_limiter=RateLimiter(clock=clock),
        membership=membership,
        kick_disconnect_delay=0,
    )


@pytest.fixture
def connect(store):
    """Register a fake socket for a participant id and return it."""

    def _connect(participant_id: str) -> FakeWebSocket:
        websocket = FakeWebSocket()
        store.connections.register(participant_id, websocket)
        return websocket

    return _connect
