"""
Shared pytest fixtures for the fulfillment service tests.

These fixtures provide consistent test data and a fully wired system with a
pinned clock, sequential ids and no real sleeping between retries.
"""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from fulfillment.carriers.client import FakeCarrierClient
from fulfillment.system import FulfillmentSystem, build_system
from fulfillment.services.carrier_registry import CarrierRegistry
from shared.channels import NotificationChannels
from shared.clock import FixedClock
from shared.config import Settings
from shared.data_store import DataStore
from shared.ids import SequentialIdGenerator
from shared.models import Address, PackageDetails, RawTrackingEvent

# 12:00 in Asia/Kolkata, outside every fixture user's quiet hours.
NOON_IST = datetime(2025, 10, 6, 6, 30, tzinfo=timezone.utc)


class ManualTimer:
    """Monotonic time source the tests move by hand (for circuit breakers)."""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float):
        self.value += seconds


def no_sleep(seconds: float):
    pass


@pytest.fixture
def data_dir() -> Path:
    """Path to the fixture data directory."""
    return Path(__file__).parent.parent / "data"


@pytest.fixture
def settings(data_dir: Path) -> Settings:
    """Settings with tiny backoffs; retries never actually sleep in tests."""
    return Settings(
        data_dir=data_dir,
        carrier_max_attempts=4,
        carrier_backoff_initial=0.0,
        carrier_backoff_max=0.0,
        carrier_backoff_jitter=0.0,
        breaker_failure_threshold=5,
        breaker_recovery_seconds=30.0,
        notification_max_attempts=3,
        notification_backoff_initial=0.0,
        notification_backoff_max=0.0,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOON_IST)


@pytest.fixture
def timer() -> ManualTimer:
    return ManualTimer()


@pytest.fixture
def id_generator() -> SequentialIdGenerator:
    return SequentialIdGenerator()


@pytest.fixture
def data_store(data_dir: Path) -> DataStore:
    """
    Fresh DataStore seeded from the JSON fixtures.

    A new instance per test so tests don't interfere with each other.
    """
    return DataStore(data_dir=data_dir)


@pytest.fixture
def empty_store() -> DataStore:
    return DataStore()


@pytest.fixture
def channels() -> NotificationChannels:
    """Fresh NotificationChannels facade that never fails on its own."""
    return NotificationChannels()


@pytest.fixture
def registry(data_dir: Path) -> CarrierRegistry:
    return CarrierRegistry.from_file(data_dir / "carriers.json")


@pytest.fixture
def carrier_client(registry: CarrierRegistry, clock: FixedClock) -> FakeCarrierClient:
    return FakeCarrierClient(registry, clock=clock)


@pytest.fixture
def system(
    settings: Settings,
    data_store: DataStore,
    registry: CarrierRegistry,
    carrier_client: FakeCarrierClient,
    channels: NotificationChannels,
    clock: FixedClock,
    id_generator: SequentialIdGenerator,
    timer: ManualTimer,
) -> FulfillmentSystem:
    """The whole service graph, dispatcher subscribed."""
    system = build_system(
        settings,
        data_store=data_store,
        registry=registry,
        carrier_client=carrier_client,
        channels=channels,
        clock=clock,
        id_generator=id_generator,
        sleep=no_sleep,
        time_source=timer,
    ).start()
    yield system
    system.shutdown()


# =============================================================================
# Shipping Fixtures
# =============================================================================

@pytest.fixture
def warehouse() -> Address:
    """Pickup address used for every shipment in the tests."""
    return Address(
        name="Fulfillment Centre BLR-2",
        phone="+918040000000",
        address_line1="Plot 9, KIADB Industrial Area",
        city="Bengaluru",
        state="Karnataka",
        pincode="562149",
    )


@pytest.fixture
def package() -> PackageDetails:
    """A 2kg parcel: every carrier in the catalog can take it."""
    return PackageDetails(weight_kg=2.0, description="Kurtas and a diya set")


@pytest.fixture
def make_event():
    """Factory for raw carrier events on 2025-10-06 at a given UTC hour."""

    def _make(raw_status: str, hour: int, event_id: str = None, minute: int = 0, **kwargs) -> RawTrackingEvent:
        return RawTrackingEvent(
            external_event_id=event_id,
            raw_status=raw_status,
            occurred_at=datetime(2025, 10, 6, hour, minute, tzinfo=timezone.utc),
            **kwargs,
        )

    return _make


# =============================================================================
# Fixture Data Ids
# =============================================================================

@pytest.fixture
def aarav_customer_id() -> str:
    """cust-001: email and phone, SMS switched on, no quiet hours."""
    return "cust-001"


@pytest.fixture
def priya_customer_id() -> str:
    """cust-002: email only, no preference record."""
    return "cust-002"


@pytest.fixture
def rohan_customer_id() -> str:
    """cust-003: quiet hours 22:00-07:00 Asia/Kolkata, SMS off."""
    return "cust-003"


@pytest.fixture
def processing_order_id() -> str:
    """ord-1001 (Aarav): processing, version 3, total 2949.35."""
    return "ord-1001"


@pytest.fixture
def pending_order_id() -> str:
    """ord-1002 (Priya): pending_payment, total 1236.00."""
    return "ord-1002"


@pytest.fixture
def quiet_hours_order_id() -> str:
    """ord-1003 (Rohan): processing, total 2199.00."""
    return "ord-1003"
