"""
Composition root.

Builds every service once, wires them to one event bus and one store, and
hands back a FulfillmentSystem. The API, the CLI demos and the tests all go
through ``build_system``; nothing else constructs services or keeps
module-level instances.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fulfillment.carriers.client import CarrierClient, FakeCarrierClient, HttpCarrierClient
from fulfillment.carriers.resilience import CarrierCallPolicy
from fulfillment.carriers.status_mapping import StatusMapper
from fulfillment.event_bus import EventBus
from fulfillment.notification_dispatcher import NotificationDispatcher
from fulfillment.services.carrier_registry import CarrierRegistry
from fulfillment.services.order_ledger import OrderLedger
from fulfillment.services.rate_shopper import RateShopper
from fulfillment.services.shipment_coordinator import ShipmentCoordinator
from fulfillment.services.tracking_ingestor import TrackingIngestor
from shared.channels import NotificationChannels
from shared.clock import Clock
from shared.config import Settings, get_settings
from shared.data_store import DataStore
from shared.ids import IdGenerator

logger = logging.getLogger("fulfillment")


@dataclass
class FulfillmentSystem:
    settings: Settings
    clock: Clock
    data_store: DataStore
    event_bus: EventBus
    channels: NotificationChannels
    registry: CarrierRegistry
    rate_shopper: RateShopper
    carrier_client: CarrierClient
    call_policy: CarrierCallPolicy
    ledger: OrderLedger
    coordinator: ShipmentCoordinator
    mapper: StatusMapper
    ingestor: TrackingIngestor
    dispatcher: NotificationDispatcher

    def start(self) -> "FulfillmentSystem":
        self.dispatcher.start()
        return self

    def shutdown(self) -> None:
        self.dispatcher.stop()
        self.carrier_client.close()


def build_system(
    settings: Optional[Settings] = None,
    *,
    data_store: Optional[DataStore] = None,
    registry: Optional[CarrierRegistry] = None,
    carrier_client: Optional[CarrierClient] = None,
    channels: Optional[NotificationChannels] = None,
    clock: Optional[Clock] = None,
    id_generator: Optional[IdGenerator] = None,
    sleep: Optional[Callable[[float], None]] = None,
    time_source: Callable[[], float] = time.monotonic,
    use_http_carriers: bool = False,
) -> FulfillmentSystem:
    """
    Assemble the service graph. The dispatcher is not subscribed until
    ``start()`` is called on the result.

    Args:
        settings: Defaults to get_settings()
        data_store: Defaults to a store seeded from settings.data_dir
        registry: Defaults to the catalog in settings.carriers_path
        carrier_client: Defaults to FakeCarrierClient, or HttpCarrierClient
            when use_http_carriers is set
        sleep: Used between retries (tests pass a no-op)
        time_source: Monotonic seconds for the circuit breakers
    """
    settings = settings or get_settings()
    clock = clock or Clock()
    id_generator = id_generator or IdGenerator()
    if data_store is None:
        data_store = DataStore(settings.data_dir)
    if registry is None:
        registry = CarrierRegistry.from_file(settings.carriers_path)
    if carrier_client is None:
        if use_http_carriers:
            carrier_client = HttpCarrierClient(registry, timeout=settings.carrier_timeout_seconds)
        else:
            carrier_client = FakeCarrierClient(registry, clock=clock)
    channels = channels or NotificationChannels()
    event_bus = EventBus()

    call_policy = CarrierCallPolicy(settings, time_source=time_source, sleep=sleep)
    rate_shopper = RateShopper(registry)
    ledger = OrderLedger(data_store, event_bus, clock=clock, id_generator=id_generator)
    coordinator = ShipmentCoordinator(
        ledger=ledger,
        registry=registry,
        rate_shopper=rate_shopper,
        carrier_client=carrier_client,
        call_policy=call_policy,
        data_store=data_store,
        event_bus=event_bus,
        clock=clock,
    )
    mapper = StatusMapper(registry)
    ingestor = TrackingIngestor(
        data_store=data_store,
        ledger=ledger,
        mapper=mapper,
        carrier_client=carrier_client,
        call_policy=call_policy,
        event_bus=event_bus,
        clock=clock,
        poll_workers=settings.poll_workers,
    )
    dispatcher = NotificationDispatcher(
        data_store=data_store,
        event_bus=event_bus,
        channels=channels,
        settings=settings,
        clock=clock,
        id_generator=id_generator,
        sleep=sleep,
        registry=registry,
    )
    logger.debug(f"Fulfillment system assembled with {len(registry)} carriers")
    return FulfillmentSystem(
        settings=settings,
        clock=clock,
        data_store=data_store,
        event_bus=event_bus,
        channels=channels,
        registry=registry,
        rate_shopper=rate_shopper,
        carrier_client=carrier_client,
        call_policy=call_policy,
        ledger=ledger,
        coordinator=coordinator,
        mapper=mapper,
        ingestor=ingestor,
        dispatcher=dispatcher,
    )
