"""
Shared pytest fixtures for the realtime coordination core tests.

These fixtures provide consistent reference data, deterministic ids and
clocks, and freshly wired services for every test.
"""

import json
from pathlib import Path

import pytest

from fakes import EventRecorder, FakeRestBackend
from realtime.appointment_service import AppointmentService
from realtime.broadcast import LocalBroadcastChannel
from realtime.event_hub import EventHub
from realtime.messaging_service import MessagingService
from realtime.notification_service import NotificationService
from shared.data_store import LocalDataStore
from shared.ids import FrozenClock, SequentialIdGenerator
from shared.remote_store import RemoteDataStore


@pytest.fixture
def data_dir() -> Path:
    """Path to the data directory holding seed.json."""
    return Path(__file__).parent.parent / "data"


@pytest.fixture
def seed_data(data_dir: Path) -> dict:
    with open(data_dir / "seed.json", "r", encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture
def clock() -> FrozenClock:
    """Starts at 2024-03-01 08:00 UTC and ticks one second per call."""
    return FrozenClock()


@pytest.fixture
def id_generator() -> SequentialIdGenerator:
    return SequentialIdGenerator()


@pytest.fixture(autouse=True)
def reset_broadcast_groups():
    """Local broadcast groups are process-wide; start every test empty."""
    LocalBroadcastChannel.reset_groups()
    yield
    LocalBroadcastChannel.reset_groups()


# =============================================================================
# Stores
# =============================================================================

@pytest.fixture
async def local_store(data_dir: Path) -> LocalDataStore:
    """
    Fresh in-memory LocalDataStore seeded from data/seed.json.

    No snapshot file is written, so tests never interfere with each other.
    """
    store = LocalDataStore(seed_path=data_dir / "seed.json")
    await store.init()
    return store


@pytest.fixture
def rest_backend(seed_data: dict) -> FakeRestBackend:
    return FakeRestBackend(seed=seed_data)


@pytest.fixture
async def remote_store(rest_backend: FakeRestBackend):
    store = RemoteDataStore(
        "https://db.test.local",
        api_key="test-key",
        transport=rest_backend.transport(),
    )
    await store.init()
    yield store
    await store.close()


@pytest.fixture(params=["local", "remote"])
def store(request):
    """
    Store for service tests, run once per backend.

    The remote variant talks to FakeRestBackend seeded with the same data.
    """
    return request.getfixturevalue(f"{request.param}_store")


# =============================================================================
# Hub and services
# =============================================================================

@pytest.fixture
def hub(id_generator: SequentialIdGenerator, clock: FrozenClock) -> EventHub:
    return EventHub(id_generator=id_generator, clock=clock)


@pytest.fixture
def recorder(hub: EventHub) -> EventRecorder:
    """Records every event published on the hub."""
    recorder = EventRecorder(hub)
    yield recorder
    recorder.stop()


@pytest.fixture
def notifications(store, hub, id_generator, clock) -> NotificationService:
    return NotificationService(store, hub, id_generator=id_generator, clock=clock)


@pytest.fixture
def messaging(store, hub, notifications, id_generator, clock) -> MessagingService:
    return MessagingService(store, hub, notifications, id_generator=id_generator, clock=clock)


@pytest.fixture
def appointments(store, hub, notifications, id_generator, clock) -> AppointmentService:
    return AppointmentService(store, hub, notifications, id_generator=id_generator, clock=clock)


# =============================================================================
# Reference data
# =============================================================================

@pytest.fixture
def client_id() -> str:
    """Alice, a client."""
    return "c1"


@pytest.fixture
def other_client_id() -> str:
    """Bob, a client."""
    return "c2"


@pytest.fixture
def provider_user_id() -> str:
    """Dana, a user who owns two provider identities (p1 and p2)."""
    return "u-provider-1"


@pytest.fixture
def provider_id() -> str:
    return "p1"


@pytest.fixture
def second_provider_id() -> str:
    """Dana's second provider identity."""
    return "p2"


@pytest.fixture
def other_provider_id() -> str:
    """Owned by Marcus (u-provider-2)."""
    return "p3"


@pytest.fixture
def admin_id() -> str:
    return "admin-1"
