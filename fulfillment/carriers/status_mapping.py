"""
Translation of carrier status strings into the canonical vocabulary.

Each carrier may define its own table in the registry; anything it does not
cover falls through to DEFAULT_STATUS_MAP. Keys are compared after
normalization: lower case, with ``-``, ``_`` and runs of spaces treated alike.
"""

import logging
import re
import threading
from collections import Counter
from typing import Optional

from fulfillment.services.carrier_registry import CarrierRegistry
from shared.models import CanonicalStatus, OrderStatus

logger = logging.getLogger("tracking_ingestor")


DEFAULT_STATUS_MAP: dict[str, CanonicalStatus] = {
    "picked": CanonicalStatus.SHIPPED,
    "dispatched": CanonicalStatus.SHIPPED,
    "in-transit": CanonicalStatus.IN_TRANSIT,
    "reached-destination": CanonicalStatus.IN_TRANSIT,
    "out-for-delivery": CanonicalStatus.OUT_FOR_DELIVERY,
    "delivered": CanonicalStatus.DELIVERED,
    "failed": CanonicalStatus.DELIVERY_FAILED,
    "returned": CanonicalStatus.RETURNED,
    # Canonical names map to themselves
    **{status.value: status for status in CanonicalStatus},
}

# Unmapped statuses land here. Logged and counted, never raised.
FALLBACK_STATUS = CanonicalStatus.IN_TRANSIT

# Canonical statuses that move the order. The others (in_transit,
# delivery_failed, returned) only update the shipment.
ORDER_STATUS_FOR_CANONICAL: dict[CanonicalStatus, OrderStatus] = {
    CanonicalStatus.SHIPPED: OrderStatus.SHIPPED,
    CanonicalStatus.OUT_FOR_DELIVERY: OrderStatus.OUT_FOR_DELIVERY,
    CanonicalStatus.DELIVERED: OrderStatus.DELIVERED,
}


def normalize_status(raw_status: str) -> str:
    return re.sub(r"[\s_\-]+", " ", raw_status.strip().lower())


_DEFAULTS = {normalize_status(k): v for k, v in DEFAULT_STATUS_MAP.items()}


class StatusMapper:
    """Maps (carrier, raw status) to a CanonicalStatus."""

    def __init__(self, registry: CarrierRegistry):
        self._tables: dict[str, dict[str, CanonicalStatus]] = {
            carrier.id: {normalize_status(k): v for k, v in carrier.status_map.items()}
            for carrier in registry.all()
        }
        self._unmapped: Counter = Counter()
        self._lock = threading.Lock()

    def lookup(self, carrier_id: str, raw_status: str) -> Optional[CanonicalStatus]:
        """The mapped status, or None if neither table knows it."""
        key = normalize_status(raw_status)
        carrier_table = self._tables.get(carrier_id, {})
        if key in carrier_table:
            return carrier_table[key]
        return _DEFAULTS.get(key)

    def map(self, carrier_id: str, raw_status: str) -> CanonicalStatus:
        status = self.lookup(carrier_id, raw_status)
        if status is not None:
            return status
        with self._lock:
            self._unmapped[(carrier_id, raw_status)] += 1
        logger.warning(
            f"Unmapped status '{raw_status}' from {carrier_id}, "
            f"treating as {FALLBACK_STATUS.value}"
        )
        return FALLBACK_STATUS

    def unmapped_counts(self) -> dict[tuple[str, str], int]:
        with self._lock:
            return dict(self._unmapped)
