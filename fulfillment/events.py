"""
Domain events published by the fulfillment services.

Design decisions:
- Events are named in past tense (OrderStatusChanged, not ChangeOrderStatus)
- Payloads carry everything a subscriber needs, so the dispatcher does not
  have to query back for the customer or the previous status
- Enum values are stored as plain strings in payloads
- Helper functions build properly structured Event objects
"""

from datetime import datetime
from typing import Any, Optional

from fulfillment.event_bus import Event


class EventTypes:
    """Constants for event type names."""
    ORDER_CREATED = "OrderCreated"
    ORDER_STATUS_CHANGED = "OrderStatusChanged"
    SHIPMENT_CREATED = "ShipmentCreated"
    TRACKING_UPDATED = "TrackingUpdated"
    TRACKING_TRANSITION_REJECTED = "TrackingTransitionRejected"


def _value(status) -> Optional[str]:
    return getattr(status, "value", status)


# =============================================================================
# Order Events
# =============================================================================

def order_created(
    order_id: str,
    customer_id: str,
    total_amount: float,
    currency: str,
    source: str = "order-ledger",
) -> Event:
    return Event(
        event_type=EventTypes.ORDER_CREATED,
        source=source,
        payload={
            "order_id": order_id,
            "customer_id": customer_id,
            "total_amount": total_amount,
            "currency": currency,
        },
    )


def order_status_changed(
    order_id: str,
    customer_id: str,
    previous_status,
    new_status,
    actor: str,
    version: int,
    changed_at: datetime,
    evidence: Optional[dict[str, Any]] = None,
    source: str = "order-ledger",
) -> Event:
    """
    Published after a transition commits.

    ``version`` is the order version the transition produced, so subscribers
    can tell two transitions to the same status apart.
    """
    return Event(
        event_type=EventTypes.ORDER_STATUS_CHANGED,
        source=source,
        payload={
            "order_id": order_id,
            "customer_id": customer_id,
            "previous_status": _value(previous_status),
            "new_status": _value(new_status),
            "actor": actor,
            "version": version,
            "changed_at": changed_at.isoformat(),
            "evidence": dict(evidence or {}),
        },
    )


# =============================================================================
# Shipping Events
# =============================================================================

def shipment_created(
    order_id: str,
    customer_id: str,
    carrier_id: str,
    tracking_id: str,
    authoritative: bool,
    source: str = "shipment-coordinator",
) -> Event:
    return Event(
        event_type=EventTypes.SHIPMENT_CREATED,
        source=source,
        payload={
            "order_id": order_id,
            "customer_id": customer_id,
            "carrier_id": carrier_id,
            "tracking_id": tracking_id,
            "authoritative": authoritative,
        },
    )


def tracking_updated(
    order_id: str,
    customer_id: Optional[str],
    carrier_id: str,
    tracking_id: str,
    previous_status,
    canonical_status,
    occurred_at: datetime,
    event_key: str,
    location: str = "",
    remarks: Optional[str] = None,
    source: str = "tracking-ingestor",
) -> Event:
    """
    Published when a tracking event advances a shipment.

    ``event_key`` identifies the carrier event (external id, or status and
    time) and is what notification dedupe keys are derived from.
    """
    return Event(
        event_type=EventTypes.TRACKING_UPDATED,
        source=source,
        payload={
            "order_id": order_id,
            "customer_id": customer_id,
            "carrier_id": carrier_id,
            "tracking_id": tracking_id,
            "previous_status": _value(previous_status),
            "canonical_status": _value(canonical_status),
            "occurred_at": occurred_at.isoformat(),
            "event_key": event_key,
            "location": location,
            "remarks": remarks,
        },
    )


def tracking_transition_rejected(
    order_id: str,
    tracking_id: str,
    carrier_id: str,
    canonical_status,
    reason: str,
    source: str = "tracking-ingestor",
) -> Event:
    """Carrier data asked for an order transition the ledger refused."""
    return Event(
        event_type=EventTypes.TRACKING_TRANSITION_REJECTED,
        source=source,
        payload={
            "order_id": order_id,
            "tracking_id": tracking_id,
            "carrier_id": carrier_id,
            "canonical_status": _value(canonical_status),
            "reason": reason,
        },
    )
