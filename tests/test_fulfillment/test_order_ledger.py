"""
Tests for the order ledger: lifecycle graph, optimistic concurrency and the
events published after each committed transition.
"""

import gc
from concurrent.futures import ThreadPoolExecutor

import pytest

from fulfillment.event_bus import EventBus
from fulfillment.events import EventTypes
from fulfillment.services.order_ledger import (
    MAX_CAS_ATTEMPTS,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    OrderLedger,
    can_transition,
)
from shared.clock import FixedClock
from shared.data_store import DataStore
from shared.exceptions import (
    ConcurrentUpdateError,
    InvalidPreconditionError,
    InvalidTransitionError,
    OrderNotFoundError,
)
from shared.ids import SequentialIdGenerator
from shared.models import Address, LineItem, OrderStatus, PaymentConfirmation


class FlakyStore(DataStore):
    """Loses the first ``conflicts`` compare-and-swaps, as if another writer got there first."""

    def __init__(self, data_dir, conflicts: int):
        super().__init__(data_dir)
        self.conflicts = conflicts
        self.cas_calls = 0

    def compare_and_swap_order(self, order, expected_version):
        self.cas_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            return False
        return super().compare_and_swap_order(order, expected_version)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def ledger(data_store: DataStore, bus: EventBus, clock: FixedClock, id_generator: SequentialIdGenerator) -> OrderLedger:
    return OrderLedger(data_store, bus, clock=clock, id_generator=id_generator)


@pytest.fixture
def shipping_address() -> Address:
    return Address(
        name="Priya Nair",
        phone="+919810000002",
        address_line1="7 Marine Drive",
        city="Kochi",
        state="Kerala",
        pincode="682031",
    )


class TestLifecycleGraph:

    def test_every_status_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(OrderStatus)

    @pytest.mark.parametrize("from_status,to_status", [
        (OrderStatus.PENDING_PAYMENT, OrderStatus.PAYMENT_CONFIRMED),
        (OrderStatus.PAYMENT_CONFIRMED, OrderStatus.PROCESSING),
        (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
        (OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY),
        (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED),
        (OrderStatus.DELIVERED, OrderStatus.REFUND_REQUESTED),
        (OrderStatus.REFUND_REQUESTED, OrderStatus.REFUNDED),
        (OrderStatus.PROCESSING, OrderStatus.CANCELLED),
    ])
    def test_allowed_edges(self, from_status, to_status):
        assert can_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        (OrderStatus.PROCESSING, OrderStatus.DELIVERED),
        (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
        (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
        (OrderStatus.PENDING_PAYMENT, OrderStatus.SHIPPED),
        (OrderStatus.DELIVERED, OrderStatus.SHIPPED),
    ])
    def test_forbidden_edges(self, from_status, to_status):
        assert not can_transition(from_status, to_status)

    def test_cancelled_and_refunded_are_dead_ends(self):
        assert VALID_TRANSITIONS[OrderStatus.CANCELLED] == frozenset()
        assert VALID_TRANSITIONS[OrderStatus.REFUNDED] == frozenset()
        assert OrderStatus.DELIVERED in TERMINAL_STATUSES


class TestCreateOrder:

    def test_create_order(self, ledger: OrderLedger, bus: EventBus, shipping_address: Address, clock: FixedClock):
        order = ledger.create_order(
            customer_id="cust-002",
            line_items=[LineItem(product_id="p1", product_name="Jute Floor Mat", quantity=1, unit_price=649.0)],
            shipping_address=shipping_address,
            shipping_cost=40.0,
        )

        assert order.id == "ord_0001"
        assert order.status == OrderStatus.PENDING_PAYMENT
        assert order.version == 1
        assert order.total_amount == 689.0
        assert order.created_at == clock.now()
        assert order.status_history[0].actor == "system"
        assert ledger.get_order("ord_0001").total_amount == 689.0

        created = bus.get_event_log(EventTypes.ORDER_CREATED)
        assert len(created) == 1
        assert created[0].payload["total_amount"] == 689.0

    def test_explicit_order_id(self, ledger: OrderLedger, shipping_address: Address):
        order = ledger.create_order("cust-002", [], shipping_address, order_id="ord-web-42")
        assert order.id == "ord-web-42"


class TestTransition:
    """Tests for OrderLedger.transition."""

    def test_valid_transition(
        self, ledger: OrderLedger, bus: EventBus, clock: FixedClock, processing_order_id: str
    ):
        updated = ledger.transition(processing_order_id, OrderStatus.SHIPPED, actor="warehouse", evidence={"awb": "1"})

        assert updated.status == OrderStatus.SHIPPED
        assert updated.version == 4
        assert updated.updated_at == clock.now()
        change = updated.status_history[-1]
        assert change.from_status == OrderStatus.PROCESSING
        assert change.to_status == OrderStatus.SHIPPED
        assert change.actor == "warehouse"
        assert change.evidence == {"awb": "1"}

        events = bus.get_event_log(EventTypes.ORDER_STATUS_CHANGED)
        assert len(events) == 1
        assert events[0].payload["previous_status"] == "processing"
        assert events[0].payload["new_status"] == "shipped"
        assert events[0].payload["version"] == 4
        assert events[0].payload["customer_id"] == "cust-001"

    def test_skipping_states_is_rejected(self, ledger: OrderLedger, bus: EventBus, quiet_hours_order_id: str):
        """processing -> delivered skips shipped and out_for_delivery."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            ledger.transition(quiet_hours_order_id, OrderStatus.DELIVERED, actor="carrier:bluedart")

        assert exc_info.value.from_status == "processing"
        assert exc_info.value.to_status == "delivered"
        order = ledger.get_order(quiet_hours_order_id)
        assert order.status == OrderStatus.PROCESSING
        assert order.version == 3
        assert bus.get_event_log(EventTypes.ORDER_STATUS_CHANGED) == []

    def test_same_status_is_a_no_op(self, ledger: OrderLedger, bus: EventBus, processing_order_id: str):
        order = ledger.transition(processing_order_id, OrderStatus.PROCESSING, actor="warehouse")

        assert order.version == 3
        assert bus.get_event_log(EventTypes.ORDER_STATUS_CHANGED) == []

    def test_accepts_status_value(self, ledger: OrderLedger, processing_order_id: str):
        assert ledger.transition(processing_order_id, "cancelled", actor="support").status == OrderStatus.CANCELLED

    def test_unknown_order(self, ledger: OrderLedger):
        with pytest.raises(OrderNotFoundError):
            ledger.transition("ord-missing", OrderStatus.SHIPPED, actor="warehouse")

    def test_cancelled_order_cannot_move(self, ledger: OrderLedger, processing_order_id: str):
        ledger.cancel_order(processing_order_id, actor="customer", reason="Ordered by mistake")

        for target in [OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.REFUNDED]:
            with pytest.raises(InvalidTransitionError):
                ledger.transition(processing_order_id, target, actor="support")

    def test_cancel_records_reason(self, ledger: OrderLedger, bus: EventBus, processing_order_id: str):
        order = ledger.cancel_order(processing_order_id, actor="customer", reason="Ordered by mistake")

        assert order.status_history[-1].evidence == {"reason": "Ordered by mistake"}
        assert bus.get_event_log(EventTypes.ORDER_STATUS_CHANGED)[0].payload["evidence"]["reason"] == "Ordered by mistake"

    def test_allowed_transitions(self, ledger: OrderLedger, processing_order_id: str):
        assert ledger.allowed_transitions(processing_order_id) == [OrderStatus.CANCELLED, OrderStatus.SHIPPED]

    def test_full_lifecycle_versions(self, ledger: OrderLedger, pending_order_id: str):
        path = [
            OrderStatus.PAYMENT_CONFIRMED,
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
            OrderStatus.REFUND_REQUESTED,
            OrderStatus.REFUNDED,
        ]
        for expected_version, status in enumerate(path, start=2):
            order = ledger.transition(pending_order_id, status, actor="test")
            assert order.version == expected_version

        assert [c.to_status for c in order.status_history] == [OrderStatus.PENDING_PAYMENT, *path]


class TestConcurrency:

    def test_retries_after_lost_swap(self, data_dir, bus: EventBus, clock: FixedClock, processing_order_id: str):
        store = FlakyStore(data_dir, conflicts=1)
        ledger = OrderLedger(store, bus, clock=clock)

        order = ledger.transition(processing_order_id, OrderStatus.SHIPPED, actor="warehouse")

        assert order.version == 4
        assert store.cas_calls == 2
        assert len(bus.get_event_log(EventTypes.ORDER_STATUS_CHANGED)) == 1

    def test_gives_up_after_repeated_conflicts(self, data_dir, bus: EventBus, clock: FixedClock, processing_order_id: str):
        store = FlakyStore(data_dir, conflicts=MAX_CAS_ATTEMPTS)
        ledger = OrderLedger(store, bus, clock=clock)

        with pytest.raises(ConcurrentUpdateError):
            ledger.transition(processing_order_id, OrderStatus.SHIPPED, actor="warehouse")

        assert store.get_order(processing_order_id).status == OrderStatus.PROCESSING
        assert bus.get_event_log(EventTypes.ORDER_STATUS_CHANGED) == []

    def test_concurrent_transitions_commit_once(self, ledger: OrderLedger, bus: EventBus, processing_order_id: str):
        """Many threads asking for the same edge: one commit, the rest are no-ops."""
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda i: ledger.transition(processing_order_id, OrderStatus.CANCELLED, actor=f"worker-{i}"),
                range(16),
            ))

        assert all(r.status == OrderStatus.CANCELLED for r in results)
        assert ledger.get_order(processing_order_id).version == 4
        assert len(bus.get_event_log(EventTypes.ORDER_STATUS_CHANGED)) == 1

    def test_lock_entries_go_away_after_use(self, ledger: OrderLedger, processing_order_id: str):
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(
                lambda i: ledger.transition(processing_order_id, OrderStatus.CANCELLED, actor=f"worker-{i}"),
                range(8),
            ))
        gc.collect()

        assert processing_order_id not in ledger._locks
        assert len(ledger._locks) == 0

    def test_competing_transitions(self, ledger: OrderLedger, processing_order_id: str):
        """shipped and cancelled race from processing: exactly one wins, the other is refused."""
        def attempt(target):
            try:
                return ledger.transition(processing_order_id, target, actor="race")
            except InvalidTransitionError as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(attempt, [OrderStatus.SHIPPED, OrderStatus.CANCELLED]))

        errors = [o for o in outcomes if isinstance(o, InvalidTransitionError)]
        assert len(errors) == 1
        assert ledger.get_order(processing_order_id).version == 4


class TestConfirmPayment:

    def test_confirm_payment(self, ledger: OrderLedger, pending_order_id: str):
        order = ledger.confirm_payment(PaymentConfirmation(
            order_id=pending_order_id, confirmed_amount=1236.0, payment_ref="pay_TEST01",
        ))

        assert order.status == OrderStatus.PAYMENT_CONFIRMED
        assert order.payment_ref == "pay_TEST01"
        assert order.status_history[-1].actor == "payment-gateway"
        assert order.status_history[-1].evidence["confirmed_amount"] == 1236.0

    def test_underpayment_rejected(self, ledger: OrderLedger, pending_order_id: str):
        with pytest.raises(InvalidPreconditionError):
            ledger.confirm_payment(PaymentConfirmation(
                order_id=pending_order_id, confirmed_amount=1000.0, payment_ref="pay_SHORT",
            ))

        assert ledger.get_order(pending_order_id).status == OrderStatus.PENDING_PAYMENT

    def test_repeat_confirmation_is_a_no_op(self, ledger: OrderLedger, bus: EventBus, pending_order_id: str):
        confirmation = PaymentConfirmation(order_id=pending_order_id, confirmed_amount=1236.0, payment_ref="pay_1")
        ledger.confirm_payment(confirmation)
        order = ledger.confirm_payment(confirmation)

        assert order.version == 2
        assert len(bus.get_event_log(EventTypes.ORDER_STATUS_CHANGED)) == 1

    def test_confirmation_after_cancel(self, ledger: OrderLedger, pending_order_id: str):
        ledger.cancel_order(pending_order_id, actor="customer")

        with pytest.raises(InvalidTransitionError):
            ledger.confirm_payment(PaymentConfirmation(
                order_id=pending_order_id, confirmed_amount=1236.0, payment_ref="pay_LATE",
            ))
