"""
Demonstration scripts.

Each demo builds a fresh system from the fixtures in data/ and walks through
one scenario, printing what happened. Run them via ``python cli.py demo``.
"""

import logging
from datetime import datetime, timezone

from fulfillment.system import FulfillmentSystem, build_system
from shared.clock import FixedClock
from shared.config import configure_logging, get_settings
from shared.models import (
    Address,
    LineItem,
    NotificationPriority,
    NotificationType,
    OrderStatus,
    PackageDetails,
    PaymentConfirmation,
    RawTrackingEvent,
)

logger = logging.getLogger("demo")

WAREHOUSE = Address(
    name="Fulfillment Centre BLR-2",
    phone="+918040000000",
    email="dispatch@fulfillment.example.com",
    address_line1="Plot 9, KIADB Industrial Area",
    city="Bengaluru",
    state="Karnataka",
    pincode="562149",
)


def _banner(title: str):
    print("\n" + "=" * 70)
    print(title)
    print("=" * 70 + "\n")


def _section(title: str):
    print("\n" + "-" * 70)
    print(title)
    print("-" * 70 + "\n")


def _print_notifications(system: FulfillmentSystem, order_id: str = None):
    system.dispatcher.flush()
    print("\nNotifications recorded:")
    for n in system.data_store.get_notifications(order_id=order_id):
        when = f" (deliver after {n.deliver_after.isoformat()})" if n.deliver_after else ""
        print(f"  [{n.status.value:<10}] {n.notification_type.value:<24} {n.channel.value:<6} -> "
              f"{n.payload['recipient']}{when}")


def _event(raw_status: str, hour: int, event_id: str = None, location: str = "") -> RawTrackingEvent:
    return RawTrackingEvent(
        external_event_id=event_id,
        raw_status=raw_status,
        occurred_at=datetime(2025, 10, 6, hour, 0, tzinfo=timezone.utc),
        location=location,
    )


def run_lifecycle_demo():
    """A new order from checkout to the customer's door."""
    _banner("DEMO: Order lifecycle")
    system = build_system().start()
    ledger = system.ledger

    order = ledger.create_order(
        customer_id="cust-002",
        line_items=[LineItem(product_id="prod-mat-09", product_name="Jute Floor Mat", quantity=1, unit_price=649.0)],
        shipping_address=Address(
            name="Priya Nair",
            phone="+919810000002",
            address_line1="7 Marine Drive",
            city="Kochi",
            state="Kerala",
            pincode="682031",
        ),
        shipping_cost=40.0,
    )
    print(f"Created {order.id}, total {order.total_amount:.2f} {order.currency}")

    _section("Payment confirmed, warehouse picks the order")
    ledger.confirm_payment(PaymentConfirmation(
        order_id=order.id, confirmed_amount=order.total_amount, payment_ref="pay_DEMO001",
    ))
    ledger.transition(order.id, OrderStatus.PROCESSING, actor="warehouse")

    _section("Shopping rates and booking the recommended carrier")
    package = PackageDetails(weight_kg=1.4, description="Jute floor mat")
    for option in system.rate_shopper.shop(package.weight_kg):
        marker = "*" if option.recommended else " "
        print(f" {marker} {option.carrier_name:<14} {option.cost:>7.2f}  {option.estimated_days}d  "
              f"{', '.join(option.features)}")
    assignment = system.coordinator.ship_with_best_rate(order.id, package, WAREHOUSE)
    print(f"\nBooked {assignment.carrier_id}, tracking id {assignment.tracking_id}")

    _section("Carrier webhooks")
    for raw in [
        _event("picked", 9, "e1", "Bengaluru Hub"),
        _event("in-transit", 15, "e2", "Coimbatore"),
        _event("out-for-delivery", 20, "e3", "Kochi"),
        _event("delivered", 22, "e4", "Kochi"),
    ]:
        result = system.ingestor.ingest(assignment.carrier_id, assignment.tracking_id, raw)
        print(f"  {raw.raw_status:<18} -> {result.outcome.value} (advanced={result.advanced})")

    final = ledger.get_order(order.id)
    print(f"\nOrder {order.id} is now {final.status.value} (version {final.version})")
    _print_notifications(system, order.id)
    system.shutdown()


def run_duplicate_webhook_demo():
    """Carrier events arriving out of order and twice."""
    _banner("DEMO: Duplicate and out-of-order webhooks")
    system = build_system().start()
    assignment = system.coordinator.create_shipment(
        "ord-1001", "delhivery", PackageDetails(weight_kg=2.0), WAREHOUSE,
    )
    print(f"ord-1001 shipped with Delhivery, tracking id {assignment.tracking_id}\n")

    picked = _event("picked", 9, "dl-1")
    in_transit = _event("in-transit", 12, "dl-2")
    out_for_delivery = _event("out-for-delivery", 18, "dl-3")
    delivered = _event("delivered", 21, "dl-4")

    for label, raw in [
        ("picked", picked),
        ("out-for-delivery", out_for_delivery),
        ("in-transit (late)", in_transit),
        ("delivered", delivered),
        ("out-for-delivery (again)", out_for_delivery),
    ]:
        result = system.ingestor.ingest("delhivery", assignment.tracking_id, raw)
        print(f"  {label:<26} -> {result.outcome.value:<12} advanced={result.advanced}")

    order = system.ledger.get_order("ord-1001")
    shipment = system.data_store.get_assignment(assignment.tracking_id)
    print(f"\nOrder status: {order.status.value}")
    print(f"Shipment status: {shipment.current_canonical_status.value} ({len(shipment.events)} events stored)")
    print(f"Ingest stats: {system.ingestor.stats.snapshot()}")
    _print_notifications(system, "ord-1001")
    system.shutdown()


def run_quiet_hours_demo():
    """A shipment notification at 23:30 IST for a user with 22:00-07:00 quiet hours."""
    _banner("DEMO: Quiet hours")
    clock = FixedClock(datetime(2025, 10, 5, 18, 0, tzinfo=timezone.utc))  # 23:30 in Asia/Kolkata
    system = build_system(clock=clock).start()

    _section("23:30 IST: ord-1003 ships (medium priority)")
    system.coordinator.create_shipment("ord-1003", "bluedart", PackageDetails(weight_kg=1.0), WAREHOUSE)

    _section("23:30 IST: security alert (urgent)")
    system.dispatcher.resolve_and_send(
        user_id="cust-003",
        notification_type=NotificationType.SECURITY_ALERT,
        data={"alert_message": "New sign-in from Chrome on Windows in Pune."},
        transition_kind="security:login-7781",
        priority=NotificationPriority.URGENT,
    )
    _print_notifications(system)

    _section("07:01 IST next morning: deferred delivery")
    clock.set(datetime(2025, 10, 6, 1, 31, tzinfo=timezone.utc))
    delivered = system.dispatcher.deliver_deferred()
    print(f"Delivered {len(delivered)} deferred notification(s)")
    _print_notifications(system)
    system.shutdown()


DEMOS = {
    "lifecycle": run_lifecycle_demo,
    "duplicate-webhook": run_duplicate_webhook_demo,
    "quiet-hours": run_quiet_hours_demo,
}


def run_all_demos():
    for demo in DEMOS.values():
        demo()
        print("\n")


if __name__ == "__main__":
    configure_logging(get_settings().log_level)
    run_all_demos()
