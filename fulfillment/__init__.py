"""
Order fulfillment and notification coordinator.

- Order ledger: owns the order lifecycle
- Shipment coordinator and rate shopper: book carriers
- Tracking ingestor: carrier events in, order transitions out
- Notification dispatcher: tells customers, respecting their preferences
- Event bus: connects the above without them knowing each other
"""

from fulfillment.event_bus import Event, EventBus
from fulfillment.notification_dispatcher import NotificationDispatcher
from fulfillment.system import FulfillmentSystem, build_system

__all__ = [
    "Event",
    "EventBus",
    "NotificationDispatcher",
    "FulfillmentSystem",
    "build_system",
]
