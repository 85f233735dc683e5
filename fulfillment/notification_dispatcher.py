"""
Notification dispatcher.

Subscribes to order transitions and tracking updates and decides who gets
told what, on which channels, and when.

For every notification:
1. Look up the user's preferences (defaults when they have none)
2. Stop if the type is disabled
3. Channels = the type's channels that are switched on globally and for
   which we have a contact address (in-app and push only need the user id)
4. In quiet hours every channel is recorded as suppressed until the window
   ends, unless the priority is urgent
5. Each channel claims a dedupe key, so the same logical event never
   produces two notifications on one channel
6. Channels are delivered concurrently, each with its own retry budget;
   a channel that keeps failing is marked failed and the rest carry on

Event handlers only enqueue work on the dispatcher's own executor, so the
publisher (a ledger transition, a tracking ingest) never waits on a channel.
Nothing here raises back into the code that triggered the notification.
"""

import hashlib
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fulfillment.event_bus import Event, EventBus
from fulfillment.events import EventTypes
from fulfillment.services.carrier_registry import CarrierRegistry
from shared.channels import NotificationChannels
from shared.clock import Clock
from shared.config import Settings
from shared.data_store import DataStore
from shared.exceptions import NotificationDeliveryFailure, NotificationNotFoundError
from shared.ids import IdGenerator
from shared.models import (
    CanonicalStatus,
    Customer,
    InboxPage,
    Notification,
    NotificationChannel,
    NotificationPreference,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    OrderStatus,
)
from shared.templates import format_amount, format_item_list, render_notification

logger = logging.getLogger("notification_dispatcher")


TRANSITION_NOTIFICATIONS: dict[OrderStatus, NotificationType] = {
    OrderStatus.PAYMENT_CONFIRMED: NotificationType.ORDER_CONFIRMATION,
    OrderStatus.SHIPPED: NotificationType.ORDER_SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY: NotificationType.ORDER_OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED: NotificationType.ORDER_DELIVERED,
    OrderStatus.CANCELLED: NotificationType.ORDER_CANCELLED,
    OrderStatus.REFUND_REQUESTED: NotificationType.REFUND_UPDATE,
    OrderStatus.REFUNDED: NotificationType.REFUND_UPDATE,
}

TRACKING_NOTIFICATIONS: dict[CanonicalStatus, NotificationType] = {
    CanonicalStatus.DELIVERY_FAILED: NotificationType.DELIVERY_EXCEPTION,
    CanonicalStatus.RETURNED: NotificationType.DELIVERY_EXCEPTION,
}

DEFAULT_PRIORITIES: dict[NotificationType, NotificationPriority] = {
    NotificationType.SECURITY_ALERT: NotificationPriority.URGENT,
    NotificationType.DELIVERY_EXCEPTION: NotificationPriority.HIGH,
    NotificationType.PAYMENT_FAILED: NotificationPriority.HIGH,
    NotificationType.ORDER_OUT_FOR_DELIVERY: NotificationPriority.HIGH,
    NotificationType.PRICE_DROP: NotificationPriority.LOW,
    NotificationType.PROMOTIONAL: NotificationPriority.LOW,
}

REFUND_STATUS_TEXT = {
    OrderStatus.REFUND_REQUESTED: "requested, we are reviewing it",
    OrderStatus.REFUNDED: "completed",
}


def dedupe_key(scope: str, transition_kind: str, channel: NotificationChannel) -> str:
    """sha256 over (order or user scope, transition kind, channel)."""
    raw = f"{scope}|{transition_kind}|{NotificationChannel(channel).value}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class DispatchStats:
    created: int = 0
    sent: int = 0
    failed: int = 0
    suppressed: int = 0
    deduplicated: int = 0
    disabled: int = 0
    default_preferences: int = 0
    missing_contact: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def incr(self, name: str, by: int = 1):
        with self._lock:
            setattr(self, name, getattr(self, name) + by)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {k: v for k, v in self.__dict__.items() if not k.startswith("_")}


class NotificationDispatcher:
    """
    Event-driven notification dispatcher.

    Example:
        dispatcher = NotificationDispatcher(store, bus, channels, settings)
        dispatcher.start()
        # every OrderStatusChanged / TrackingUpdated now notifies the customer
    """

    def __init__(
        self,
        data_store: DataStore,
        event_bus: EventBus,
        channels: NotificationChannels,
        settings: Settings,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
        sleep: Optional[Callable[[float], None]] = None,
        registry: Optional[CarrierRegistry] = None,
    ):
        self.data_store = data_store
        self.event_bus = event_bus
        self.channels = channels
        self.settings = settings
        self.clock = clock or Clock()
        self.id_generator = id_generator or IdGenerator()
        self._sleep = sleep or time.sleep
        self.registry = registry
        self.stats = DispatchStats()
        self._started = False
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    def start(self) -> None:
        """Start the worker pool and subscribe to the events that produce notifications."""
        if self._started:
            logger.warning("NotificationDispatcher already started")
            return
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.dispatch_workers, thread_name_prefix="dispatch"
        )
        self.event_bus.subscribe(EventTypes.ORDER_STATUS_CHANGED, self.on_transition)
        self.event_bus.subscribe(EventTypes.TRACKING_UPDATED, self.on_tracking_update)
        self._started = True
        logger.info("NotificationDispatcher started - subscribed to events")

    def stop(self) -> None:
        """Unsubscribe, then finish whatever was already queued."""
        if not self._started:
            return
        self.event_bus.unsubscribe(EventTypes.ORDER_STATUS_CHANGED, self.on_transition)
        self.event_bus.unsubscribe(EventTypes.TRACKING_UPDATED, self.on_tracking_update)
        self._started = False
        self._executor.shutdown(wait=True)
        self._executor = None
        logger.info("NotificationDispatcher stopped")

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for queued event handling to finish.

        Returns False if ``timeout`` ran out first.
        """
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def on_transition(self, event: Event) -> None:
        self._submit(self.handle_transition, event)

    def on_tracking_update(self, event: Event) -> None:
        self._submit(self.handle_tracking_update, event)

    def _submit(self, handler: Callable[[Event], list[Notification]], event: Event) -> None:
        executor = self._executor
        if executor is None:
            logger.warning(f"Dispatcher stopped, dropping {event.event_type} ({event.event_id})")
            return
        future = executor.submit(self._run_handler, handler, event)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _run_handler(self, handler: Callable[[Event], list[Notification]], event: Event) -> list[Notification]:
        try:
            return handler(event)
        except Exception:
            logger.exception(f"Notification handling failed for {event.event_type} ({event.event_id})")
            return []

    def handle_transition(self, event: Event) -> list[Notification]:
        payload = event.payload
        new_status = OrderStatus(payload["new_status"])
        notification_type = TRANSITION_NOTIFICATIONS.get(new_status)
        if notification_type is None:
            logger.debug(f"No notification for transition to {new_status.value}")
            return []

        order_id = payload["order_id"]
        logger.info(f"Handling OrderStatusChanged: order={order_id}, status={new_status.value}")
        data = self._order_context(order_id)
        data["reason"] = payload.get("evidence", {}).get("reason", "")
        if new_status in REFUND_STATUS_TEXT:
            data["refund_status"] = REFUND_STATUS_TEXT[new_status]

        return self.resolve_and_send(
            user_id=payload["customer_id"],
            notification_type=notification_type,
            data=data,
            transition_kind=f"order_status:{new_status.value}",
            order_id=order_id,
        )

    def handle_tracking_update(self, event: Event) -> list[Notification]:
        payload = event.payload
        canonical = CanonicalStatus(payload["canonical_status"])
        notification_type = TRACKING_NOTIFICATIONS.get(canonical)
        if notification_type is None or not payload.get("customer_id"):
            return []

        order_id = payload["order_id"]
        logger.info(f"Handling TrackingUpdated: order={order_id}, status={canonical.value}")
        data = self._order_context(order_id)
        data.update({
            "tracking_status": canonical.value.replace("_", " "),
            "location": payload.get("location") or "",
            "remarks": payload.get("remarks") or "",
        })
        return self.resolve_and_send(
            user_id=payload["customer_id"],
            notification_type=notification_type,
            data=data,
            transition_kind=f"tracking:{payload['tracking_id']}:{payload['event_key']}",
            order_id=order_id,
        )

    def _order_context(self, order_id: str) -> dict[str, Any]:
        context: dict[str, Any] = {"order_id": order_id}
        order = self.data_store.get_order(order_id)
        if order:
            context["total_amount"] = format_amount(order.total_amount, order.currency)
            context["item_list"] = format_item_list([
                {
                    "name": item.product_name,
                    "quantity": item.quantity,
                    "price": format_amount(item.total_price, order.currency),
                }
                for item in order.line_items
            ])
        assignment = self.data_store.get_assignment_for_order(order_id)
        if assignment:
            carrier = self.registry.find(assignment.carrier_id) if self.registry else None
            context["carrier_name"] = carrier.name if carrier else assignment.carrier_id
            context["tracking_id"] = assignment.tracking_id
            context["tracking_url"] = assignment.tracking_url or ""
        return context

    # =========================================================================
    # Resolution
    # =========================================================================

    def _preferences_for(self, user_id: str) -> NotificationPreference:
        prefs = self.data_store.get_notification_preferences(user_id)
        if prefs is None:
            self.stats.incr("default_preferences")
            logger.info(f"No preferences for {user_id}, using defaults")
            prefs = NotificationPreference.defaults(user_id, self.settings.default_timezone)
        return prefs

    def _recipient(self, channel: NotificationChannel, user_id: str, customer: Optional[Customer]) -> Optional[str]:
        if channel == NotificationChannel.EMAIL:
            return customer.email if customer else None
        if channel == NotificationChannel.SMS:
            return customer.phone if customer else None
        return user_id

    def resolve_and_send(
        self,
        user_id: str,
        notification_type: NotificationType,
        data: dict[str, Any],
        transition_kind: str,
        priority: Optional[NotificationPriority] = None,
        order_id: Optional[str] = None,
    ) -> list[Notification]:
        """
        Resolve preferences and channels for one logical event and deliver it.

        Returns the notifications created for this call (suppressed ones
        included). Channels whose dedupe key was already claimed are skipped
        and not returned.
        """
        notification_type = NotificationType(notification_type)
        priority = NotificationPriority(priority or DEFAULT_PRIORITIES.get(notification_type, NotificationPriority.MEDIUM))
        prefs = self._preferences_for(user_id)

        if not prefs.for_type(notification_type).enabled:
            self.stats.incr("disabled")
            logger.info(f"{user_id} has {notification_type.value} notifications disabled")
            return []

        customer = self.data_store.get_customer(user_id)
        context = {"customer_name": customer.name if customer else "there", **data}

        targets: list[tuple[NotificationChannel, str]] = []
        for channel in prefs.get_channels_for_type(notification_type):
            recipient = self._recipient(channel, user_id, customer)
            if not recipient:
                self.stats.incr("missing_contact")
                logger.warning(f"No {channel.value} address for {user_id}, skipping channel")
                continue
            targets.append((channel, recipient))
        if not targets:
            logger.info(f"No deliverable channels for {user_id} ({notification_type.value})")
            return []

        now = self.clock.now()
        settings = prefs.global_settings
        quiet = priority != NotificationPriority.URGENT and settings.in_quiet_hours(now)
        deliver_after = settings.quiet_hours_end_after(now) if quiet else None

        created: list[Notification] = []
        scope = order_id or user_id
        for channel, recipient in targets:
            key = dedupe_key(scope, transition_kind, channel)
            if not self.data_store.claim_dedupe_key(key, now, self.settings.dedupe_ttl_seconds):
                self.stats.incr("deduplicated")
                logger.info(f"Skipping duplicate {notification_type.value} on {channel.value} for {scope}")
                continue
            title, body = render_notification(notification_type, channel, **context)
            notification = Notification(
                id=self.id_generator.new_id("ntf"),
                dedupe_key=key,
                user_id=user_id,
                order_id=order_id,
                notification_type=notification_type,
                channel=channel,
                priority=priority,
                payload={"recipient": recipient, "title": title, "body": body, "data": data},
                status=NotificationStatus.SUPPRESSED if quiet else NotificationStatus.PENDING,
                deliver_after=deliver_after,
                created_at=now,
            )
            self.data_store.save_notification(notification)
            self.stats.incr("created")
            created.append(notification)

        if not created:
            return []
        if quiet:
            self.stats.incr("suppressed", len(created))
            logger.info(
                f"Quiet hours for {user_id}: {len(created)} {notification_type.value} notification(s) "
                f"held until {deliver_after.isoformat()}"
            )
            return created
        return self._deliver_all(created)

    # =========================================================================
    # Delivery
    # =========================================================================

    def _retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(NotificationDeliveryFailure),
            stop=stop_after_attempt(self.settings.notification_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.notification_backoff_initial,
                max=self.settings.notification_backoff_max,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
            sleep=self._sleep,
        )

    def _deliver(self, notification: Notification) -> Notification:
        payload = notification.payload
        attempts = 0

        def attempt():
            nonlocal attempts
            attempts += 1
            try:
                result = self.channels.send(
                    notification.channel, payload["recipient"], payload.get("title"), payload["body"]
                )
            except NotificationDeliveryFailure:
                raise
            except Exception as e:
                # Provider SDKs raise instead of returning a failed result
                raise NotificationDeliveryFailure(notification.channel.value, f"{type(e).__name__}: {e}") from e
            if not result.success:
                raise NotificationDeliveryFailure(notification.channel.value, result.error or "unknown error")

        update: dict[str, Any]
        try:
            self._retrying()(attempt)
            update = {"status": NotificationStatus.SENT, "delivered_at": self.clock.now(), "error": None}
            self.stats.incr("sent")
        except NotificationDeliveryFailure as e:
            update = {"status": NotificationStatus.FAILED, "error": str(e)}
            self.stats.incr("failed")
            logger.error(f"Giving up on notification {notification.id} after {attempts} attempt(s): {e}")

        updated = notification.model_copy(update={**update, "attempts": notification.attempts + attempts})
        self.data_store.save_notification(updated)
        return updated

    def _deliver_all(self, notifications: list[Notification]) -> list[Notification]:
        if len(notifications) == 1:
            return [self._deliver(notifications[0])]
        workers = min(self.settings.notification_workers, len(notifications))
        delivered: list[Notification] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify") as pool:
            futures = [(n, pool.submit(self._deliver, n)) for n in notifications]
            for notification, future in futures:
                try:
                    delivered.append(future.result())
                except Exception:
                    logger.exception(f"Delivery of notification {notification.id} crashed")
        return delivered

    def deliver_deferred(self, now: Optional[datetime] = None) -> list[Notification]:
        """
        Deliver suppressed notifications whose quiet window is over.

        Each held notification is claimed before it is sent, so overlapping
        sweeps (a scheduler and the admin endpoint, say) never both send it.
        """
        now = now or self.clock.now()
        due = self.data_store.claim_due_notifications(now)
        if not due:
            return []
        logger.info(f"Delivering {len(due)} deferred notification(s)")
        return self._deliver_all(due)

    # =========================================================================
    # In-app Inbox
    # =========================================================================

    def get_inbox(
        self,
        user_id: str,
        types: Optional[list[NotificationType]] = None,
        is_read: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> InboxPage:
        return self.data_store.get_inbox(user_id, types=types, is_read=is_read, limit=limit, offset=offset)

    def mark_as_read(self, user_id: str, notification_id: str) -> Notification:
        notification = self.data_store.mark_notification_read(user_id, notification_id, self.clock.now())
        if notification is None:
            raise NotificationNotFoundError(notification_id)
        return notification

    def mark_all_as_read(self, user_id: str) -> int:
        count = self.data_store.mark_all_notifications_read(user_id, self.clock.now())
        logger.info(f"Marked {count} notification(s) read for {user_id}")
        return count

    def delete_notification(self, user_id: str, notification_id: str) -> None:
        """Drop an entry from the inbox; the delivery record stays for auditing."""
        if not self.data_store.dismiss_notification(user_id, notification_id, self.clock.now()):
            raise NotificationNotFoundError(notification_id)
