"""
Shipment coordinator: books a carrier for an order that is ready to ship.

Flow for ``create_shipment``:
1. the order must be in SHIPMENT_PRECONDITION_STATUS and have no shipment yet
2. the carrier is called through CarrierCallPolicy (retry + circuit breaker)
3. the assignment is saved, then the order is moved to ``shipped``
4. ShipmentCreated is published

If the carrier cannot be reached nothing is saved and the order is left as
it was. If the order was cancelled while the carrier call was in flight the
booking is kept for reference with ``authoritative=False`` and the order
stays cancelled.
"""

import logging
import threading
import weakref
from typing import Optional

from fulfillment.carriers.client import CarrierClient
from fulfillment.carriers.resilience import CarrierCallPolicy
from fulfillment.event_bus import EventBus
from fulfillment.events import shipment_created
from fulfillment.services.carrier_registry import CarrierRegistry
from fulfillment.services.order_ledger import OrderLedger
from fulfillment.services.rate_shopper import RateShopper, quote
from shared.clock import Clock
from shared.data_store import DataStore
from shared.exceptions import (
    CarrierUnavailableError,
    InvalidPreconditionError,
    InvalidTransitionError,
    NoEligibleCarrierError,
)
from shared.models import (
    Address,
    CanonicalStatus,
    OrderStatus,
    PackageDetails,
    ShipmentRequest,
    ShippingAssignment,
    ShippingPreferences,
)

logger = logging.getLogger("shipment_coordinator")


SHIPMENT_PRECONDITION_STATUS = OrderStatus.PROCESSING


class ShipmentCoordinator:

    def __init__(
        self,
        ledger: OrderLedger,
        registry: CarrierRegistry,
        rate_shopper: RateShopper,
        carrier_client: CarrierClient,
        call_policy: CarrierCallPolicy,
        data_store: DataStore,
        event_bus: EventBus,
        clock: Optional[Clock] = None,
    ):
        self.ledger = ledger
        self.registry = registry
        self.rate_shopper = rate_shopper
        self.carrier_client = carrier_client
        self.call_policy = call_policy
        self.data_store = data_store
        self.event_bus = event_bus
        self.clock = clock or Clock()
        # Entries vanish once no caller holds the lock
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, order_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(order_id, threading.Lock())

    def create_shipment(
        self,
        order_id: str,
        carrier_id: str,
        package: PackageDetails,
        pickup: Address,
        preferences: Optional[ShippingPreferences] = None,
    ) -> ShippingAssignment:
        """
        Book ``carrier_id`` for an order and move the order to ``shipped``.

        Raises:
            OrderNotFoundError: no such order
            UnknownCarrierError: carrier not in the registry
            InvalidPreconditionError: order not ready to ship, already has a
                shipment, or the carrier cannot take the package
            CarrierUnavailableError: carrier unreachable; nothing was saved
            CarrierRequestError: carrier rejected the request; nothing was saved
        """
        preferences = preferences or ShippingPreferences()
        with self._lock_for(order_id):
            order = self.ledger.get_order(order_id)
            if order.status != SHIPMENT_PRECONDITION_STATUS:
                raise InvalidPreconditionError(
                    f"Order {order_id} is {order.status.value}, "
                    f"must be {SHIPMENT_PRECONDITION_STATUS.value} to ship",
                    order_id=order_id,
                )
            if self.data_store.get_assignment_for_order(order_id) is not None:
                raise InvalidPreconditionError(f"Order {order_id} already has a shipment", order_id=order_id)

            carrier = self.registry.get(carrier_id)
            cod_amount = preferences.cod_amount if preferences.cash_on_delivery else 0.0
            if not self.rate_shopper.is_eligible(carrier, package.weight_kg, cod_amount):
                raise InvalidPreconditionError(
                    f"{carrier.name} cannot take {package.weight_kg}kg"
                    + (" with cash on delivery" if cod_amount > 0 else ""),
                    order_id=order_id,
                )

            request = ShipmentRequest(
                order_id=order_id,
                carrier_id=carrier_id,
                pickup=pickup,
                delivery=order.shipping_address,
                package=package,
                preferences=preferences,
            )
            logger.info(f"Booking {carrier_id} for order {order_id} ({package.weight_kg}kg)")
            booked = self.call_policy.call(
                carrier_id, "create_shipment", self.carrier_client.create_shipment, request
            )

            now = self.clock.now()
            assignment = ShippingAssignment(
                order_id=order_id,
                carrier_id=carrier_id,
                tracking_id=booked.tracking_id,
                carrier_ref=booked.carrier_ref,
                tracking_url=carrier.tracking_link(booked.tracking_id),
                estimated_delivery=booked.estimated_delivery,
                shipping_cost=quote(carrier, package.weight_kg, cod_amount),
                current_canonical_status=CanonicalStatus.SHIPPED,
                created_at=now,
                updated_at=now,
            )
            self.data_store.save_assignment(assignment)

            try:
                self.ledger.transition(
                    order_id,
                    OrderStatus.SHIPPED,
                    actor="shipment-coordinator",
                    evidence={"carrier_id": carrier_id, "tracking_id": booked.tracking_id},
                )
            except InvalidTransitionError:
                assignment = assignment.model_copy(update={"authoritative": False})
                self.data_store.save_assignment(assignment)
                current = self.ledger.get_order(order_id)
                logger.warning(
                    f"Order {order_id} became {current.status.value} while booking {carrier_id}; "
                    f"shipment {booked.tracking_id} kept as non-authoritative"
                )
                if current.status != OrderStatus.CANCELLED:
                    raise

        self.event_bus.publish(shipment_created(
            order_id=order_id,
            customer_id=order.customer_id,
            carrier_id=carrier_id,
            tracking_id=assignment.tracking_id,
            authoritative=assignment.authoritative,
        ))
        return assignment

    def ship_with_best_rate(
        self,
        order_id: str,
        package: PackageDetails,
        pickup: Address,
        preferences: Optional[ShippingPreferences] = None,
    ) -> ShippingAssignment:
        """
        Shop rates and book the recommended carrier, falling back to the next
        option in rank order whenever a carrier is unavailable.

        Raises:
            NoEligibleCarrierError: no carrier can take the package
            CarrierUnavailableError: every eligible carrier was unavailable
        """
        preferences = preferences or ShippingPreferences()
        cod_amount = preferences.cod_amount if preferences.cash_on_delivery else 0.0
        options = self.rate_shopper.shop(package.weight_kg, cod_amount)
        if not options:
            raise NoEligibleCarrierError(
                f"No carrier can ship {package.weight_kg}kg for order {order_id}"
            )

        ordered = [o for o in options if o.recommended] + [o for o in options if not o.recommended]
        last_error: Optional[CarrierUnavailableError] = None
        for option in ordered:
            try:
                return self.create_shipment(order_id, option.carrier_id, package, pickup, preferences)
            except CarrierUnavailableError as e:
                logger.warning(f"{option.carrier_id} unavailable for order {order_id}, trying next option")
                last_error = e
        raise last_error
