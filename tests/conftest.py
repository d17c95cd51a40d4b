"""
Shared pytest fixtures for the sync engine tests.

Timers are shrunk so retries, toasts and readiness polling finish in
milliseconds. Every engine created through make_engine is stopped after the
test.
"""

import pytest

from shared.config import SyncSettings
from shared.models import Recipient, UserRole
from shared.state_store import LocalStateStore
from shared.storage import SharedStorage
from sync_engine.engine import SyncEngine
from sync_engine.event_bus import EventBus
from sync_engine.remote import InMemoryRemoteStore


PRODUCTS = [
    {"id": "prod-001", "name": "Classic Tee", "price": "100.00", "stock": 40},
    {"id": "prod-002", "name": "Logo Cap", "price": "50.00", "stock": 25},
    {"id": "prod-003", "name": "Heavyweight Hoodie", "price": "180.00", "stock": 5},
    {"id": "prod-004", "name": "Canvas Tote", "price": "60.00", "stock": 11},
]


@pytest.fixture
def settings() -> SyncSettings:
    """Settings with every timer shrunk for tests."""
    return SyncSettings(
        queue_retry_delay=0.01,
        toast_duration=0.0,
        startup_grace_delay=0.01,
        remote_ready_attempts=2,
        remote_ready_interval=0.01,
        backup_interval=60,
        integrity_check_interval=60,
    )


@pytest.fixture
def storage() -> SharedStorage:
    """Fresh shared storage (one device)."""
    return SharedStorage()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store(storage: SharedStorage, bus: EventBus, settings: SyncSettings) -> LocalStateStore:
    """Local state store with an empty snapshot."""
    return LocalStateStore(storage, bus, settings, "tab-1")


@pytest.fixture
def seeded_store(store: LocalStateStore) -> LocalStateStore:
    """Local state store holding the test catalog (as confirmed version 1 documents)."""
    docs = [{**p, "version": 1} for p in PRODUCTS]
    store.write(lambda draft: draft["products"].extend(docs))
    return store


@pytest.fixture
def server() -> InMemoryRemoteStore:
    """Remote store seeded with the test catalog."""
    remote = InMemoryRemoteStore()
    remote.seed("products", PRODUCTS)
    return remote


# =============================================================================
# Recipients
# =============================================================================

@pytest.fixture
def partner() -> Recipient:
    """A business partner (places orders)."""
    return Recipient(user_id="partner-1", role=UserRole.PARTNER)


@pytest.fixture
def admin() -> Recipient:
    """A portal admin (sees new orders and inventory alerts)."""
    return Recipient(user_id="admin-1", role=UserRole.ADMIN)


# =============================================================================
# Engines
# =============================================================================

@pytest.fixture
async def make_engine(server: InMemoryRemoteStore, settings: SyncSettings, partner: Recipient):
    """
    Factory for started engines connected to the test server.

    Pass the same storage to two engines to simulate two tabs on one device.
    """
    engines: list[SyncEngine] = []

    async def factory(client_id: str = "tab-1", recipient: Recipient = None, storage: SharedStorage = None):
        engine = SyncEngine(
            client_id,
            storage or SharedStorage(),
            server.connect(client_id),
            recipient or partner,
            settings=settings,
        )
        await engine.start(background_jobs=False)
        await engine.settle()
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.stop()


@pytest.fixture
async def engine(make_engine) -> SyncEngine:
    """A single started partner client."""
    return await make_engine("partner-tab")
