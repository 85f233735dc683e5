"""
Tracking ingestor: turns carrier tracking events (webhooks and polls) into
shipment state and order transitions.

Design decisions:
- Duplicate, late and unknown events are outcomes, not exceptions
- Events are ordered by the carrier's ``occurred_at``, never by arrival;
  a late event is stored for audit but does not move anything
- A per-tracking-id lock serializes webhook and poll delivery of the same
  shipment, so the dedupe check and the append happen atomically
- Order transitions asked for by carrier data go through the ledger like any
  other; a refusal is logged, counted and published, never raised
"""

import logging
import threading
import weakref
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from fulfillment.carriers.client import CarrierClient
from fulfillment.carriers.resilience import CarrierCallPolicy
from fulfillment.carriers.status_mapping import ORDER_STATUS_FOR_CANONICAL, StatusMapper
from fulfillment.event_bus import Event, EventBus
from fulfillment.events import tracking_transition_rejected, tracking_updated
from fulfillment.services.order_ledger import OrderLedger
from shared.clock import Clock
from shared.data_store import DataStore
from shared.exceptions import CarrierError, InvalidTransitionError, OrderNotFoundError
from shared.models import CanonicalStatus, RawTrackingEvent, StatusEvent

logger = logging.getLogger("tracking_ingestor")


class IngestOutcome(str, Enum):
    APPLIED = "applied"
    DEDUPLICATED = "deduplicated"
    REJECTED = "rejected"


@dataclass
class IngestResult:
    """
    What happened to one tracking event.

    ``advanced`` is False for an applied event that arrived out of order.
    """
    outcome: IngestOutcome
    advanced: bool = False
    canonical_status: Optional[CanonicalStatus] = None
    reason: Optional[str] = None


@dataclass
class IngestStats:
    applied: int = 0
    advanced: int = 0
    deduplicated: int = 0
    rejected: int = 0
    unmapped_statuses: int = 0
    rejected_transitions: int = 0
    poll_failures: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def incr(self, name: str, by: int = 1):
        with self._lock:
            setattr(self, name, getattr(self, name) + by)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {k: v for k, v in self.__dict__.items() if not k.startswith("_")}


@dataclass
class BulkPollResult:
    results: dict[str, list[IngestResult]] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)


class TrackingIngestor:

    def __init__(
        self,
        data_store: DataStore,
        ledger: OrderLedger,
        mapper: StatusMapper,
        carrier_client: CarrierClient,
        call_policy: CarrierCallPolicy,
        event_bus: EventBus,
        clock: Optional[Clock] = None,
        poll_workers: int = 4,
    ):
        self.data_store = data_store
        self.ledger = ledger
        self.mapper = mapper
        self.carrier_client = carrier_client
        self.call_policy = call_policy
        self.event_bus = event_bus
        self.clock = clock or Clock()
        self.poll_workers = poll_workers
        self.stats = IngestStats()
        # Entries vanish once no caller holds the lock
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, tracking_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(tracking_id, threading.Lock())

    def _reject(self, reason: str) -> IngestResult:
        self.stats.incr("rejected")
        logger.warning(f"Rejected tracking event: {reason}")
        return IngestResult(outcome=IngestOutcome.REJECTED, reason=reason)

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest(self, carrier_id: str, tracking_id: str, raw_event: RawTrackingEvent) -> IngestResult:
        """
        Apply one carrier event to its shipment (and possibly its order).

        Never raises for bad, duplicate or late data; see IngestResult.
        """
        to_publish: list[Event] = []
        with self._lock_for(tracking_id):
            assignment = self.data_store.get_assignment(tracking_id)
            if assignment is None:
                return self._reject(f"unknown tracking id {tracking_id}")
            if assignment.carrier_id != carrier_id:
                return self._reject(
                    f"tracking id {tracking_id} belongs to {assignment.carrier_id}, not {carrier_id}"
                )

            if self.mapper.lookup(carrier_id, raw_event.raw_status) is None:
                self.stats.incr("unmapped_statuses")
            canonical = self.mapper.map(carrier_id, raw_event.raw_status)

            if assignment.is_duplicate(raw_event.external_event_id, canonical, raw_event.occurred_at):
                self.stats.incr("deduplicated")
                logger.info(
                    f"Duplicate event for {tracking_id}: {raw_event.raw_status} "
                    f"@ {raw_event.occurred_at.isoformat()}"
                )
                return IngestResult(
                    outcome=IngestOutcome.DEDUPLICATED,
                    canonical_status=canonical,
                    reason="already recorded",
                )

            latest = assignment.latest_occurred_at()
            advanced = latest is None or raw_event.occurred_at >= latest
            now = self.clock.now()
            event = StatusEvent(
                carrier_id=carrier_id,
                external_event_id=raw_event.external_event_id,
                raw_status=raw_event.raw_status,
                canonical_status=canonical,
                occurred_at=raw_event.occurred_at,
                received_at=now,
                location=raw_event.location,
                remarks=raw_event.remarks,
                advanced=advanced,
            )
            previous_status = assignment.current_canonical_status
            update = {"events": [*assignment.events, event], "updated_at": now}
            if advanced:
                update["current_canonical_status"] = canonical
            assignment = assignment.model_copy(update=update)
            self.data_store.save_assignment(assignment)
            self.stats.incr("applied")

            if not advanced:
                logger.info(
                    f"Late event for {tracking_id}: {canonical.value} @ {raw_event.occurred_at.isoformat()} "
                    f"is older than {latest.isoformat()}, stored without advancing"
                )
                return IngestResult(
                    outcome=IngestOutcome.APPLIED,
                    advanced=False,
                    canonical_status=canonical,
                    reason="older than latest recorded event",
                )

            self.stats.incr("advanced")
            logger.info(
                f"Shipment {tracking_id}: {previous_status.value if previous_status else None} "
                f"-> {canonical.value} ({raw_event.raw_status})"
            )

            if not assignment.authoritative:
                logger.info(f"Shipment {tracking_id} is not authoritative, order {assignment.order_id} untouched")
                return IngestResult(outcome=IngestOutcome.APPLIED, advanced=True, canonical_status=canonical)

            rejected_reason = self._advance_order(assignment.order_id, tracking_id, canonical, event)
            if rejected_reason:
                to_publish.append(tracking_transition_rejected(
                    order_id=assignment.order_id,
                    tracking_id=tracking_id,
                    carrier_id=carrier_id,
                    canonical_status=canonical,
                    reason=rejected_reason,
                ))

            order = self.data_store.get_order(assignment.order_id)
            to_publish.append(tracking_updated(
                order_id=assignment.order_id,
                customer_id=order.customer_id if order else None,
                carrier_id=carrier_id,
                tracking_id=tracking_id,
                previous_status=previous_status,
                canonical_status=canonical,
                occurred_at=raw_event.occurred_at,
                event_key=raw_event.external_event_id or f"{canonical.value}@{raw_event.occurred_at.isoformat()}",
                location=raw_event.location,
                remarks=raw_event.remarks,
            ))

        for outgoing in to_publish:
            self.event_bus.publish(outgoing)
        return IngestResult(outcome=IngestOutcome.APPLIED, advanced=True, canonical_status=canonical)

    def _advance_order(
        self,
        order_id: str,
        tracking_id: str,
        canonical: CanonicalStatus,
        event: StatusEvent,
    ) -> Optional[str]:
        """Apply the order counterpart of ``canonical``. Returns a reason if the ledger refused."""
        target = ORDER_STATUS_FOR_CANONICAL.get(canonical)
        if target is None:
            return None
        try:
            self.ledger.transition(
                order_id,
                target,
                actor=f"carrier:{event.carrier_id}",
                evidence={
                    "tracking_id": tracking_id,
                    "raw_status": event.raw_status,
                    "external_event_id": event.external_event_id,
                    "occurred_at": event.occurred_at.isoformat(),
                },
            )
        except (InvalidTransitionError, OrderNotFoundError) as e:
            self.stats.incr("rejected_transitions")
            logger.warning(f"Carrier update for {tracking_id} not applied to order {order_id}: {e}")
            return str(e)
        return None

    # =========================================================================
    # Polling
    # =========================================================================

    def poll(self, carrier_id: str, tracking_id: str) -> list[IngestResult]:
        """
        Pull events from the carrier and ingest them oldest first.

        Raises:
            CarrierUnavailableError: carrier unreachable after retries
        """
        events = self.call_policy.call(
            carrier_id, "poll_tracking", self.carrier_client.poll_tracking, carrier_id, tracking_id
        )
        events = sorted(events, key=lambda e: e.occurred_at)
        return [self.ingest(carrier_id, tracking_id, e) for e in events]

    def poll_active_shipments(self) -> BulkPollResult:
        """Poll every authoritative shipment that has not reached a final status."""
        active = self.data_store.get_assignments(active_only=True)
        summary = BulkPollResult()
        if not active:
            return summary

        logger.info(f"Polling {len(active)} active shipment(s)")
        with ThreadPoolExecutor(max_workers=self.poll_workers, thread_name_prefix="poll") as pool:
            futures = {
                a.tracking_id: pool.submit(self.poll, a.carrier_id, a.tracking_id) for a in active
            }
            for tracking_id, future in futures.items():
                try:
                    summary.results[tracking_id] = future.result()
                except CarrierError as e:
                    self.stats.incr("poll_failures")
                    summary.failures[tracking_id] = str(e)
                    logger.error(f"Polling {tracking_id} failed: {e}")
        return summary
