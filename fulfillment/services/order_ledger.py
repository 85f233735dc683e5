"""
Order ledger: the only writer of order state.

Every status change goes through ``transition``, which checks the edge against
the lifecycle graph, writes with optimistic concurrency and publishes an
OrderStatusChanged event once the write has committed.

Lifecycle:

    pending_payment   -> payment_confirmed | cancelled
    payment_confirmed -> processing | cancelled
    processing        -> shipped | cancelled
    shipped           -> out_for_delivery | refund_requested
    out_for_delivery  -> delivered
    delivered         -> refund_requested
    refund_requested  -> refunded

No edge skips a state. Carrier data asking for e.g. shipped -> delivered is
refused like any other invalid edge.
"""

import logging
import threading
import weakref
from typing import Any, Optional

from fulfillment.event_bus import EventBus
from fulfillment.events import order_created, order_status_changed
from shared.clock import Clock
from shared.data_store import DataStore
from shared.exceptions import (
    ConcurrentUpdateError,
    InvalidPreconditionError,
    InvalidTransitionError,
    OrderNotFoundError,
)
from shared.ids import IdGenerator
from shared.models import Address, LineItem, Order, OrderStatus, PaymentConfirmation, StatusChange

logger = logging.getLogger("order_ledger")


VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.PAYMENT_CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.PAYMENT_CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.REFUND_REQUESTED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUND_REQUESTED}),
    OrderStatus.REFUND_REQUESTED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

# Fulfillment is over once an order reaches one of these (delivered keeps its refund edge).
TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED})

# Re-read/re-validate rounds after losing a compare-and-swap.
MAX_CAS_ATTEMPTS = 3


def allowed_transitions(status: OrderStatus) -> frozenset[OrderStatus]:
    return VALID_TRANSITIONS[OrderStatus(status)]


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return OrderStatus(to_status) in allowed_transitions(from_status)


class OrderLedger:
    """
    Owns orders and enforces their lifecycle.

    Transitions on the same order are serialized by a per-order lock. The
    write itself is a compare-and-swap on ``version`` so that writers outside
    this process (or outside the ledger) are detected rather than overwritten.
    Events are published after the lock is released.
    """

    def __init__(
        self,
        data_store: DataStore,
        event_bus: EventBus,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
    ):
        self.data_store = data_store
        self.event_bus = event_bus
        self.clock = clock or Clock()
        self.id_generator = id_generator or IdGenerator()
        # Entries vanish once no caller holds the lock
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, order_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(order_id, threading.Lock())

    # =========================================================================
    # Queries
    # =========================================================================

    def get_order(self, order_id: str) -> Order:
        order = self.data_store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def allowed_transitions(self, order_id: str) -> list[OrderStatus]:
        """Statuses the order can move to right now."""
        order = self.get_order(order_id)
        return sorted(allowed_transitions(order.status), key=lambda s: s.value)

    # =========================================================================
    # Commands
    # =========================================================================

    def create_order(
        self,
        customer_id: str,
        line_items: list[LineItem],
        shipping_address: Address,
        shipping_cost: float = 0.0,
        tax_amount: float = 0.0,
        discount_amount: float = 0.0,
        currency: str = "INR",
        billing_address: Optional[Address] = None,
        order_id: Optional[str] = None,
    ) -> Order:
        """Create an order in ``pending_payment`` and publish OrderCreated."""
        now = self.clock.now()
        order = Order(
            id=order_id or self.id_generator.new_id("ord"),
            customer_id=customer_id,
            status=OrderStatus.PENDING_PAYMENT,
            line_items=line_items,
            shipping_cost=shipping_cost,
            tax_amount=tax_amount,
            discount_amount=discount_amount,
            currency=currency,
            shipping_address=shipping_address,
            billing_address=billing_address,
            status_history=[
                StatusChange(
                    from_status=None,
                    to_status=OrderStatus.PENDING_PAYMENT,
                    actor="system",
                    changed_at=now,
                )
            ],
            created_at=now,
            updated_at=now,
        )
        self.data_store.insert_order(order)
        logger.info(f"Order {order.id} created for {customer_id}: total {order.total_amount} {currency}")

        self.event_bus.publish(order_created(
            order_id=order.id,
            customer_id=customer_id,
            total_amount=order.total_amount,
            currency=currency,
        ))
        return order

    def transition(
        self,
        order_id: str,
        target_status: OrderStatus,
        actor: str,
        evidence: Optional[dict[str, Any]] = None,
    ) -> Order:
        """
        Move an order along one edge of the lifecycle graph.

        Asking for the current status is accepted and changes nothing.

        Raises:
            OrderNotFoundError: no such order
            InvalidTransitionError: the edge does not exist; order untouched
            ConcurrentUpdateError: lost the compare-and-swap MAX_CAS_ATTEMPTS times
        """
        return self._transition(order_id, OrderStatus(target_status), actor, evidence or {})

    def confirm_payment(self, confirmation: PaymentConfirmation) -> Order:
        """
        Apply a payment gateway confirmation.

        A repeated confirmation for an already confirmed order is a no-op.

        Raises:
            InvalidPreconditionError: the confirmed amount is below the order total
        """
        order = self.get_order(confirmation.order_id)
        if confirmation.confirmed_amount + 0.005 < order.total_amount:
            raise InvalidPreconditionError(
                f"Payment of {confirmation.confirmed_amount:.2f} does not cover "
                f"order total {order.total_amount:.2f}",
                order_id=order.id,
            )
        return self._transition(
            confirmation.order_id,
            OrderStatus.PAYMENT_CONFIRMED,
            actor="payment-gateway",
            evidence={
                "payment_ref": confirmation.payment_ref,
                "confirmed_amount": confirmation.confirmed_amount,
            },
            updates={"payment_ref": confirmation.payment_ref},
        )

    def cancel_order(self, order_id: str, actor: str, reason: str = "") -> Order:
        return self.transition(order_id, OrderStatus.CANCELLED, actor, {"reason": reason} if reason else None)

    def _transition(
        self,
        order_id: str,
        target: OrderStatus,
        actor: str,
        evidence: dict[str, Any],
        updates: Optional[dict[str, Any]] = None,
    ) -> Order:
        with self._lock_for(order_id):
            for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
                current = self.get_order(order_id)
                if current.status == target:
                    logger.debug(f"Order {order_id} already {target.value}, nothing to do")
                    return current
                if not can_transition(current.status, target):
                    logger.warning(
                        f"Rejected transition for order {order_id}: "
                        f"{current.status.value} -> {target.value} (actor={actor})"
                    )
                    raise InvalidTransitionError(order_id, current.status, target)

                now = self.clock.now()
                change = StatusChange(
                    from_status=current.status,
                    to_status=target,
                    actor=actor,
                    evidence=evidence,
                    changed_at=now,
                )
                updated = current.model_copy(
                    update={
                        **(updates or {}),
                        "status": target,
                        "version": current.version + 1,
                        "status_history": [*current.status_history, change],
                        "updated_at": now,
                    },
                    deep=True,
                )
                if self.data_store.compare_and_swap_order(updated, expected_version=current.version):
                    break
                logger.warning(
                    f"Order {order_id} changed during transition to {target.value} "
                    f"(attempt {attempt}/{MAX_CAS_ATTEMPTS}), re-reading"
                )
            else:
                raise ConcurrentUpdateError(order_id, MAX_CAS_ATTEMPTS)

        logger.info(
            f"Order {order_id}: {current.status.value} -> {target.value} "
            f"(v{updated.version}, actor={actor})"
        )
        self.event_bus.publish(order_status_changed(
            order_id=order_id,
            customer_id=updated.customer_id,
            previous_status=current.status,
            new_status=target,
            actor=actor,
            version=updated.version,
            changed_at=now,
            evidence=evidence,
        ))
        return updated
