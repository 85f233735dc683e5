"""
In-memory data store for the fulfillment service.

Holds orders, shipping assignments, customers, notification preferences,
notification records and the notification dedupe index. Can be seeded from
JSON fixture files; everything after that lives in memory.

Design decisions:
- One RLock guards all collections; individual operations are atomic
- Reads return deep copies so callers cannot mutate stored state
- Orders are written with compare-and-swap on ``version`` (optimistic
  concurrency); the ledger retries on a lost swap
- The dedupe index has a TTL and a claim is atomic, so two concurrent
  dispatches of the same logical event cannot both win
- Held (quiet hours) notifications are claimed for delivery the same way
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from shared.models import (
    Customer,
    InboxPage,
    Notification,
    NotificationChannel,
    NotificationPreference,
    NotificationStatus,
    NotificationType,
    Order,
    ShippingAssignment,
)

logger = logging.getLogger("data_store")

DEDUPE_PURGE_INTERVAL = timedelta(hours=1)


class DataStore:
    """
    Central store that owns every persisted collection.

    In a deployed system each collection would sit in its own table; the
    method surface here is what the services need from that storage.
    """

    def __init__(self, data_dir: Optional[Path] = None):
        """
        Args:
            data_dir: Directory containing JSON fixtures used to seed the store.
                      None starts with empty collections.
        """
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self._lock = threading.RLock()
        self._loaded = False

        self._orders: dict[str, Order] = {}
        self._assignments: dict[str, ShippingAssignment] = {}  # keyed by tracking_id
        self._customers: dict[str, Customer] = {}
        self._preferences: dict[str, NotificationPreference] = {}  # keyed by user_id
        self._notifications: dict[str, Notification] = {}
        self._dedupe_index: dict[str, datetime] = {}  # key -> expires_at
        self._next_dedupe_purge: Optional[datetime] = None

    # =========================================================================
    # Data Loading (lazy)
    # =========================================================================

    def _load_json(self, filename: str) -> list[dict]:
        """Load a JSON fixture file, or nothing if it is absent."""
        if self.data_dir is None:
            return []
        filepath = self.data_dir / filename
        if not filepath.exists():
            return []
        with open(filepath, "r") as f:
            return json.load(f)

    def _ensure_loaded(self):
        if self._loaded:
            return
        with self._lock:
            if self._loaded:
                return
            for data in self._load_json("customers.json"):
                customer = Customer.model_validate(data)
                self._customers[customer.id] = customer
            for data in self._load_json("orders.json"):
                order = Order.model_validate(data)
                self._orders[order.id] = order
            for data in self._load_json("notification_preferences.json"):
                pref = NotificationPreference.model_validate(data)
                self._preferences[pref.user_id] = pref
            self._loaded = True
            if self.data_dir is not None:
                logger.info(
                    f"Seeded store from {self.data_dir}: {len(self._orders)} orders, "
                    f"{len(self._customers)} customers, {len(self._preferences)} preference records"
                )

    # =========================================================================
    # Order Operations
    # =========================================================================

    def get_order(self, order_id: str) -> Optional[Order]:
        self._ensure_loaded()
        with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    def get_orders(self, customer_id: Optional[str] = None) -> list[Order]:
        self._ensure_loaded()
        with self._lock:
            return [
                o.model_copy(deep=True) for o in self._orders.values()
                if customer_id is None or o.customer_id == customer_id
            ]

    def insert_order(self, order: Order) -> None:
        """Store a new order. Fails if the id is taken."""
        self._ensure_loaded()
        with self._lock:
            if order.id in self._orders:
                raise ValueError(f"Order already exists: {order.id}")
            self._orders[order.id] = order.model_copy(deep=True)

    def compare_and_swap_order(self, order: Order, expected_version: int) -> bool:
        """
        Replace the stored order only if its version is still ``expected_version``.

        Returns False (and writes nothing) if someone else committed first.
        """
        self._ensure_loaded()
        with self._lock:
            current = self._orders.get(order.id)
            if current is None or current.version != expected_version:
                return False
            self._orders[order.id] = order.model_copy(deep=True)
            return True

    # =========================================================================
    # Shipping Assignment Operations
    # =========================================================================

    def get_assignment(self, tracking_id: str) -> Optional[ShippingAssignment]:
        with self._lock:
            assignment = self._assignments.get(tracking_id)
            return assignment.model_copy(deep=True) if assignment else None

    def get_assignment_for_order(self, order_id: str) -> Optional[ShippingAssignment]:
        """The authoritative assignment for an order, if any."""
        with self._lock:
            for assignment in self._assignments.values():
                if assignment.order_id == order_id and assignment.authoritative:
                    return assignment.model_copy(deep=True)
            return None

    def get_assignments(self, active_only: bool = False) -> list[ShippingAssignment]:
        """All assignments; ``active_only`` skips final and non-authoritative ones."""
        with self._lock:
            return [
                a.model_copy(deep=True) for a in self._assignments.values()
                if not active_only or (a.authoritative and not a.is_final)
            ]

    def save_assignment(self, assignment: ShippingAssignment) -> None:
        with self._lock:
            self._assignments[assignment.tracking_id] = assignment.model_copy(deep=True)

    # =========================================================================
    # Customer Operations
    # =========================================================================

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        self._ensure_loaded()
        with self._lock:
            customer = self._customers.get(customer_id)
            return customer.model_copy(deep=True) if customer else None

    # =========================================================================
    # Notification Preference Operations
    # =========================================================================

    def get_notification_preferences(self, user_id: str) -> Optional[NotificationPreference]:
        """A user's preferences, or None if they never saved any."""
        self._ensure_loaded()
        with self._lock:
            pref = self._preferences.get(user_id)
            return pref.model_copy(deep=True) if pref else None

    def save_notification_preferences(self, pref: NotificationPreference) -> None:
        self._ensure_loaded()
        with self._lock:
            self._preferences[pref.user_id] = pref.model_copy(deep=True)

    # =========================================================================
    # Notification Operations
    # =========================================================================

    def save_notification(self, notification: Notification) -> None:
        with self._lock:
            self._notifications[notification.id] = notification.model_copy(deep=True)

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        with self._lock:
            notification = self._notifications.get(notification_id)
            return notification.model_copy(deep=True) if notification else None

    def get_notifications(
        self,
        user_id: Optional[str] = None,
        status: Optional[NotificationStatus] = None,
        order_id: Optional[str] = None,
    ) -> list[Notification]:
        """Notifications matching all given filters, oldest first."""
        with self._lock:
            found = [
                n.model_copy(deep=True) for n in self._notifications.values()
                if (user_id is None or n.user_id == user_id)
                and (status is None or n.status == status)
                and (order_id is None or n.order_id == order_id)
            ]
        return sorted(found, key=lambda n: n.created_at)

    def claim_due_notifications(self, now: datetime) -> list[Notification]:
        """
        Move suppressed notifications whose quiet window has ended to PENDING
        and return them.

        The switch happens under the store lock, so a held notification is
        handed to exactly one caller even when several sweeps overlap.
        """
        with self._lock:
            due = [
                n for n in self._notifications.values()
                if n.status == NotificationStatus.SUPPRESSED
                and n.deliver_after is not None
                and n.deliver_after <= now
            ]
            claimed = []
            for n in due:
                pending = n.model_copy(update={"status": NotificationStatus.PENDING}, deep=True)
                self._notifications[n.id] = pending
                claimed.append(pending.model_copy(deep=True))
        return sorted(claimed, key=lambda n: n.deliver_after)

    # =========================================================================
    # In-app Inbox
    # =========================================================================

    @staticmethod
    def _in_inbox(n: Notification, user_id: str) -> bool:
        return (
            n.user_id == user_id
            and n.channel == NotificationChannel.IN_APP
            and n.status == NotificationStatus.SENT
            and n.dismissed_at is None
        )

    def _inbox(self, user_id: str) -> list[Notification]:
        return [n for n in self._notifications.values() if self._in_inbox(n, user_id)]

    def get_inbox(
        self,
        user_id: str,
        types: Optional[list[NotificationType]] = None,
        is_read: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> InboxPage:
        """Delivered in-app notifications for a user, newest first."""
        with self._lock:
            inbox = self._inbox(user_id)
            unread_count = sum(1 for n in inbox if not n.is_read)
            matching = [
                n.model_copy(deep=True) for n in inbox
                if (not types or n.notification_type in types)
                and (is_read is None or n.is_read == is_read)
            ]
        matching.sort(key=lambda n: n.created_at, reverse=True)
        return InboxPage(
            notifications=matching[offset:offset + limit],
            total=len(matching),
            unread_count=unread_count,
        )

    def mark_notification_read(self, user_id: str, notification_id: str, now: datetime) -> Optional[Notification]:
        """
        Stamp ``read_at`` on one inbox entry. Already-read entries keep their
        first timestamp. None if the user has no such entry.
        """
        with self._lock:
            notification = self._notifications.get(notification_id)
            if notification is None or not self._in_inbox(notification, user_id):
                return None
            if notification.read_at is None:
                notification = notification.model_copy(update={"read_at": now})
                self._notifications[notification_id] = notification
            return notification.model_copy(deep=True)

    def mark_all_notifications_read(self, user_id: str, now: datetime) -> int:
        """Returns how many entries were unread."""
        with self._lock:
            unread = [n for n in self._inbox(user_id) if not n.is_read]
            for n in unread:
                self._notifications[n.id] = n.model_copy(update={"read_at": now})
        return len(unread)

    def dismiss_notification(self, user_id: str, notification_id: str, now: datetime) -> bool:
        """
        Remove an entry from the user's inbox. The delivery record is kept,
        only ``dismissed_at`` is set.
        """
        with self._lock:
            notification = self._notifications.get(notification_id)
            if notification is None or not self._in_inbox(notification, user_id):
                return False
            self._notifications[notification_id] = notification.model_copy(update={"dismissed_at": now})
            return True

    # =========================================================================
    # Dedupe Index
    # =========================================================================

    def claim_dedupe_key(self, key: str, now: datetime, ttl_seconds: int) -> bool:
        """
        Atomically claim a dedupe key.

        Returns True if the key was free (or its previous claim expired),
        False if it is already held. Expired keys are swept at most once per
        ``DEDUPE_PURGE_INTERVAL`` as part of a claim.
        """
        with self._lock:
            if self._next_dedupe_purge is None or now >= self._next_dedupe_purge:
                self.purge_expired_dedupe_keys(now)
                self._next_dedupe_purge = now + DEDUPE_PURGE_INTERVAL
            expires_at = self._dedupe_index.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._dedupe_index[key] = now + timedelta(seconds=ttl_seconds)
            return True

    def purge_expired_dedupe_keys(self, now: datetime) -> int:
        """Drop expired keys. Returns how many were removed."""
        with self._lock:
            expired = [k for k, expires_at in self._dedupe_index.items() if expires_at <= now]
            for key in expired:
                del self._dedupe_index[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired dedupe keys")
        return len(expired)

    def dedupe_key_count(self) -> int:
        with self._lock:
            return len(self._dedupe_index)

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def reload(self):
        """Drop everything and re-seed from the fixtures on next access."""
        with self._lock:
            self._orders.clear()
            self._assignments.clear()
            self._customers.clear()
            self._preferences.clear()
            self._notifications.clear()
            self._dedupe_index.clear()
            self._next_dedupe_purge = None
            self._loaded = False
