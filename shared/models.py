"""
Domain models for the fulfillment service.

These models cover the full path of an order: the order itself and its
lifecycle, the shipment handed to a carrier and the tracking events that come
back, and the notification preferences and records used to tell the customer.

Design decisions:
- Using Pydantic for validation and serialization
- Status enums are kept as enum members (no use_enum_values) so graph lookups
  keyed by enum work the same for values loaded from JSON
- All datetimes are timezone-aware UTC; naive inputs are assumed to be UTC
- Services never mutate a stored model in place; they work on copies and save
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Enums - Status values used across the domain
# =============================================================================

class OrderStatus(str, Enum):
    """
    Order lifecycle states.
    The allowed edges between them live in the order ledger.
    """
    PENDING_PAYMENT = "pending_payment"       # Created, waiting for the payment gateway
    PAYMENT_CONFIRMED = "payment_confirmed"   # Gateway confirmed the payment
    PROCESSING = "processing"                 # Being picked and packed
    SHIPPED = "shipped"                       # Handed to a carrier
    OUT_FOR_DELIVERY = "out_for_delivery"     # On the last-mile vehicle
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"


class CanonicalStatus(str, Enum):
    """Carrier-agnostic shipping status vocabulary."""
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    RETURNED = "returned"


class NotificationType(str, Enum):
    """Every kind of notification the dispatcher can produce."""
    ORDER_CONFIRMATION = "order_confirmation"
    ORDER_SHIPPED = "order_shipped"
    ORDER_OUT_FOR_DELIVERY = "order_out_for_delivery"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"
    REFUND_UPDATE = "refund_update"
    DELIVERY_EXCEPTION = "delivery_exception"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    PRICE_DROP = "price_drop"
    PROMOTIONAL = "promotional"
    SECURITY_ALERT = "security_alert"
    ACCOUNT_UPDATE = "account_update"


class NotificationChannel(str, Enum):
    """Supported notification channels."""
    IN_APP = "in_app"
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationStatus(str, Enum):
    PENDING = "pending"         # Claimed, delivery in progress
    SENT = "sent"
    FAILED = "failed"           # Retries exhausted
    SUPPRESSED = "suppressed"   # Held back by quiet hours, waiting for deliver_after


# =============================================================================
# Orders
# =============================================================================

class Address(BaseModel):
    """Address snapshot taken when the order is placed."""
    name: str
    phone: str
    email: Optional[str] = None
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str
    country: str = "India"


class LineItem(BaseModel):
    """A single item within an order."""
    product_id: str = Field(..., description="Reference to product")
    product_name: str = Field(..., description="Name at time of order")
    quantity: int = Field(..., ge=1, description="Quantity ordered")
    unit_price: float = Field(..., ge=0, description="Price at time of order")

    @property
    def total_price(self) -> float:
        return round(self.quantity * self.unit_price, 2)


class StatusChange(BaseModel):
    """One committed lifecycle transition, kept on the order for audit."""
    from_status: Optional[OrderStatus]
    to_status: OrderStatus
    actor: str
    evidence: dict[str, Any] = Field(default_factory=dict)
    changed_at: datetime


class Order(BaseModel):
    """
    Order entity representing a customer purchase.

    Owned by the order ledger and changed only through its transition API.
    ``version`` increases by one on every committed transition and is used
    for optimistic concurrency on save.
    """
    id: str = Field(..., description="Unique order identifier")
    customer_id: str = Field(..., description="Reference to customer")
    status: OrderStatus = Field(default=OrderStatus.PENDING_PAYMENT)
    line_items: list[LineItem] = Field(default_factory=list)
    shipping_cost: float = Field(default=0.0, ge=0)
    tax_amount: float = Field(default=0.0, ge=0)
    discount_amount: float = Field(default=0.0, ge=0)
    currency: str = "INR"
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_ref: Optional[str] = None
    version: int = Field(default=1, ge=1)
    status_history: list[StatusChange] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def subtotal(self) -> float:
        return round(sum(item.total_price for item in self.line_items), 2)

    @computed_field
    @property
    def total_amount(self) -> float:
        total = self.subtotal + self.shipping_cost + self.tax_amount - self.discount_amount
        return round(max(total, 0.0), 2)


class Customer(BaseModel):
    """
    Customer contact details.

    Used by the notification dispatcher to address email and SMS messages.
    Push and in-app notifications only need the customer id.
    """
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class PaymentConfirmation(BaseModel):
    """Inbound signal from the payment gateway."""
    order_id: str
    confirmed_amount: float = Field(..., ge=0)
    payment_ref: str


# =============================================================================
# Shipping
# =============================================================================

class PackageDetails(BaseModel):
    weight_kg: float = Field(..., gt=0)
    length_cm: Optional[float] = Field(default=None, gt=0)
    width_cm: Optional[float] = Field(default=None, gt=0)
    height_cm: Optional[float] = Field(default=None, gt=0)
    declared_value: float = Field(default=0.0, ge=0)
    description: str = ""
    fragile: bool = False


class ShippingPreferences(BaseModel):
    delivery_speed: Literal["standard", "express", "overnight"] = "standard"
    cash_on_delivery: bool = False
    cod_amount: float = Field(default=0.0, ge=0)
    insurance: bool = False


class ShipmentRequest(BaseModel):
    """What we send to a carrier's create-shipment endpoint."""
    order_id: str
    carrier_id: str
    pickup: Address
    delivery: Address
    package: PackageDetails
    preferences: ShippingPreferences = Field(default_factory=ShippingPreferences)


class CarrierShipment(BaseModel):
    """What the carrier gives back for a created shipment."""
    tracking_id: str
    carrier_ref: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class ShippingOption(BaseModel):
    """One ranked entry produced by rate shopping."""
    carrier_id: str
    carrier_name: str
    cost: float
    estimated_days: int
    supports_realtime_tracking: bool
    features: list[str] = Field(default_factory=list)
    recommended: bool = False


class RawTrackingEvent(BaseModel):
    """
    A carrier event after webhook/poll normalization, before status mapping.

    ``raw_status`` is still in the carrier's own vocabulary.
    """
    external_event_id: Optional[str] = None
    raw_status: str
    occurred_at: datetime
    location: str = ""
    remarks: Optional[str] = None

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class StatusEvent(BaseModel):
    """
    A tracking event as stored on a shipping assignment.

    Immutable once stored. Later events supersede it, nothing edits it.
    """
    model_config = ConfigDict(frozen=True)

    carrier_id: str
    external_event_id: Optional[str] = None
    raw_status: str
    canonical_status: CanonicalStatus
    occurred_at: datetime
    received_at: datetime
    location: str = ""
    remarks: Optional[str] = None
    advanced: bool = Field(
        default=True,
        description="False when the event arrived out of order and was stored for audit only",
    )

    @field_validator("occurred_at", "received_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


FINAL_CANONICAL_STATUSES = frozenset({CanonicalStatus.DELIVERED, CanonicalStatus.RETURNED})


class ShippingAssignment(BaseModel):
    """
    The shipment booked for an order (one per order).

    Created by the shipment coordinator, afterwards changed only by the
    tracking ingestor. ``authoritative`` is False when the order was cancelled
    while the carrier booking was in flight; such an assignment is kept for
    reference but never drives the order.
    """
    order_id: str
    carrier_id: str
    tracking_id: str
    carrier_ref: Optional[str] = None
    tracking_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    shipping_cost: float = 0.0
    current_canonical_status: Optional[CanonicalStatus] = CanonicalStatus.SHIPPED
    events: list[StatusEvent] = Field(default_factory=list)
    authoritative: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def latest_occurred_at(self) -> Optional[datetime]:
        """Most recent carrier-reported time among stored events."""
        if not self.events:
            return None
        return max(event.occurred_at for event in self.events)

    def is_duplicate(
        self,
        external_event_id: Optional[str],
        canonical_status: CanonicalStatus,
        occurred_at: datetime,
    ) -> bool:
        """
        Check whether an incoming event was already stored.

        Events carrying a carrier id are matched by that id. Events without one
        are matched on (canonical status, occurred_at).
        """
        if external_event_id:
            return any(e.external_event_id == external_event_id for e in self.events)
        occurred_at = ensure_utc(occurred_at)
        return any(
            e.canonical_status == canonical_status and e.occurred_at == occurred_at
            for e in self.events
        )

    @property
    def is_final(self) -> bool:
        return self.current_canonical_status in FINAL_CANONICAL_STATUSES


# =============================================================================
# Notification Preferences
# =============================================================================

class TypePreference(BaseModel):
    """Per-type opt-in and the channels requested for that type."""
    enabled: bool = True
    channels: list[NotificationChannel] = Field(default_factory=lambda: [NotificationChannel.IN_APP])


def _pref(enabled: bool, *channels: str) -> TypePreference:
    return TypePreference(enabled=enabled, channels=[NotificationChannel(c) for c in channels])


# Applied when a user has no preference record, or no entry for a type.
DEFAULT_TYPE_PREFERENCES: dict[NotificationType, TypePreference] = {
    NotificationType.ORDER_CONFIRMATION: _pref(True, "in_app", "email"),
    NotificationType.ORDER_SHIPPED: _pref(True, "in_app", "email", "push"),
    NotificationType.ORDER_OUT_FOR_DELIVERY: _pref(True, "in_app", "push"),
    NotificationType.ORDER_DELIVERED: _pref(True, "in_app", "email", "push"),
    NotificationType.ORDER_CANCELLED: _pref(True, "in_app", "email"),
    NotificationType.REFUND_UPDATE: _pref(True, "in_app", "email"),
    NotificationType.DELIVERY_EXCEPTION: _pref(True, "in_app", "email", "push", "sms"),
    NotificationType.PAYMENT_SUCCESS: _pref(True, "in_app", "email"),
    NotificationType.PAYMENT_FAILED: _pref(True, "in_app", "email", "push"),
    NotificationType.PRICE_DROP: _pref(True, "in_app", "push"),
    NotificationType.PROMOTIONAL: _pref(False, "email"),
    NotificationType.SECURITY_ALERT: _pref(True, "in_app", "email", "push"),
    NotificationType.ACCOUNT_UPDATE: _pref(True, "in_app", "email"),
}


def _parse_hhmm(value: str) -> int:
    """Minutes after midnight for an ``HH:MM`` string."""
    hour, minute = value.split(":")
    return int(hour) * 60 + int(minute)


class GlobalSettings(BaseModel):
    """
    Channel master switches and the quiet-hours window.

    The window is ``[do_not_disturb_start, do_not_disturb_end)`` in the user's
    timezone. ``start > end`` means it spans midnight; ``start == end`` is an
    empty window.
    """
    email_enabled: bool = True
    push_enabled: bool = True
    sms_enabled: bool = False
    do_not_disturb_start: Optional[str] = None
    do_not_disturb_end: Optional[str] = None
    timezone: str = "Asia/Kolkata"

    @field_validator("do_not_disturb_start", "do_not_disturb_end")
    @classmethod
    def _valid_hhmm(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        parts = value.split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid time format: {value}. Use HH:MM")
        hour, minute = int(parts[0]), int(parts[1])
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ValueError(f"Invalid time format: {value}. Use HH:MM")
        return f"{hour:02d}:{minute:02d}"

    @field_validator("timezone")
    @classmethod
    def _valid_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}") from None
        return value

    def channel_enabled(self, channel: NotificationChannel) -> bool:
        if channel == NotificationChannel.EMAIL:
            return self.email_enabled
        if channel == NotificationChannel.PUSH:
            return self.push_enabled
        if channel == NotificationChannel.SMS:
            return self.sms_enabled
        return channel == NotificationChannel.IN_APP

    @property
    def has_quiet_hours(self) -> bool:
        return bool(self.do_not_disturb_start and self.do_not_disturb_end)

    def in_quiet_hours(self, now: datetime) -> bool:
        """True if ``now`` (any timezone) falls inside the user's window."""
        if not self.has_quiet_hours:
            return False
        start = _parse_hhmm(self.do_not_disturb_start)
        end = _parse_hhmm(self.do_not_disturb_end)
        if start == end:
            return False
        local = ensure_utc(now).astimezone(ZoneInfo(self.timezone))
        current = local.hour * 60 + local.minute
        if start < end:
            return start <= current < end
        # Crosses midnight
        return current >= start or current < end

    def quiet_hours_end_after(self, now: datetime) -> Optional[datetime]:
        """The next end of the quiet window after ``now``, in UTC."""
        if not self.has_quiet_hours:
            return None
        end = _parse_hhmm(self.do_not_disturb_end)
        local = ensure_utc(now).astimezone(ZoneInfo(self.timezone))
        candidate = local.replace(hour=end // 60, minute=end % 60, second=0, microsecond=0)
        if candidate <= local:
            candidate = candidate + timedelta(days=1)
        return candidate.astimezone(timezone.utc)


class NotificationPreference(BaseModel):
    """
    A user's notification preferences.

    Types missing from ``preferences`` fall back to DEFAULT_TYPE_PREFERENCES,
    so a partial record only overrides what it names.
    """
    user_id: str
    preferences: dict[NotificationType, TypePreference] = Field(
        default_factory=lambda: {k: v.model_copy(deep=True) for k, v in DEFAULT_TYPE_PREFERENCES.items()}
    )
    global_settings: GlobalSettings = Field(default_factory=GlobalSettings)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def defaults(cls, user_id: str, timezone_name: str = "Asia/Kolkata") -> "NotificationPreference":
        return cls(user_id=user_id, global_settings=GlobalSettings(timezone=timezone_name))

    def for_type(self, notification_type: NotificationType) -> TypePreference:
        pref = self.preferences.get(notification_type)
        if pref is None:
            pref = DEFAULT_TYPE_PREFERENCES.get(notification_type, TypePreference())
        return pref

    def get_channels_for_type(self, notification_type: NotificationType) -> list[NotificationChannel]:
        """
        Channels requested by the type that are also switched on globally.
        Empty if the type is disabled.
        """
        pref = self.for_type(notification_type)
        if not pref.enabled:
            return []
        return [c for c in pref.channels if self.global_settings.channel_enabled(c)]


# =============================================================================
# Notifications
# =============================================================================

class Notification(BaseModel):
    """
    One notification for one channel.

    ``dedupe_key`` identifies the logical event per channel. A key is claimed
    once; retries reuse this record.
    """
    id: str
    dedupe_key: str
    user_id: str
    order_id: Optional[str] = None
    notification_type: NotificationType
    channel: NotificationChannel
    priority: NotificationPriority = NotificationPriority.MEDIUM
    payload: dict[str, Any] = Field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    deliver_after: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    # In-app inbox state
    read_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None

    @property
    def is_read(self) -> bool:
        return self.read_at is not None


class InboxPage(BaseModel):
    """One page of a user's in-app inbox plus the counts the UI badges need."""
    notifications: list[Notification]
    total: int
    unread_count: int
