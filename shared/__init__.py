"""
Shared infrastructure for the fulfillment service.

- Domain models (Order, ShippingAssignment, NotificationPreference, ...)
- Error taxonomy
- In-memory data store
- Mock notification channels (in-app, email, push, SMS)
- Notification templates
- Settings, clock and id sources
"""

from shared.models import (
    CanonicalStatus,
    Customer,
    NotificationChannel,
    NotificationPreference,
    NotificationPriority,
    NotificationType,
    Order,
    OrderStatus,
    ShippingAssignment,
)
from shared.data_store import DataStore
from shared.channels import NotificationChannels, NotificationResult

__all__ = [
    "CanonicalStatus",
    "Customer",
    "NotificationChannel",
    "NotificationPreference",
    "NotificationPriority",
    "NotificationType",
    "Order",
    "OrderStatus",
    "ShippingAssignment",
    "DataStore",
    "NotificationChannels",
    "NotificationResult",
]
