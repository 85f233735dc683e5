"""
Carrier API clients.

All carrier integrations implement CarrierClient. The coordinator and the
tracking ingestor program against it; which implementation is used is decided
by the composition root.

Errors are normalized here:
- network failures, timeouts, 429 and 5xx -> CarrierTransportError (retryable)
- other 4xx -> CarrierRequestError (not retryable)
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Callable, Optional

import httpx
from pydantic import ValidationError

from fulfillment.services.carrier_registry import CarrierRegistry
from shared.clock import Clock
from shared.exceptions import CarrierRequestError, CarrierTransportError
from shared.models import CarrierShipment, RawTrackingEvent, ShipmentRequest

logger = logging.getLogger("carrier_client")


class CarrierClient(ABC):
    """Abstract interface for carrier APIs."""

    @abstractmethod
    def create_shipment(self, request: ShipmentRequest) -> CarrierShipment:
        """Book a shipment with ``request.carrier_id``."""
        ...

    @abstractmethod
    def poll_tracking(self, carrier_id: str, tracking_id: str) -> list[RawTrackingEvent]:
        """All tracking events the carrier currently reports for a shipment."""
        ...

    def close(self) -> None:
        pass


# =============================================================================
# HTTP client
# =============================================================================

class HttpCarrierClient(CarrierClient):
    """
    JSON-over-HTTP carrier client.

    Contract against each carrier's ``api_endpoint``:
        POST {endpoint}/shipments          body: ShipmentRequest
            -> {"tracking_id", "carrier_ref", "estimated_delivery"}
        GET  {endpoint}/tracking/{id}
            -> {"events": [{"event_id", "status", "timestamp", "location", "remarks"}]}

    Every request carries the configured timeout; retries and circuit
    breaking are applied by the caller (see resilience.CarrierCallPolicy).
    """

    def __init__(
        self,
        registry: CarrierRegistry,
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.registry = registry
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
        )

    def _url(self, carrier_id: str, path: str) -> str:
        endpoint = self.registry.get(carrier_id).api_endpoint
        return f"{endpoint.rstrip('/')}/{path.lstrip('/')}"

    def _request(self, carrier_id: str, method: str, path: str, **kwargs) -> dict:
        url = self._url(carrier_id, path)
        try:
            response = self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise CarrierTransportError(carrier_id, f"timeout calling {url}") from e
        except httpx.TransportError as e:
            raise CarrierTransportError(carrier_id, f"transport error calling {url}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise CarrierTransportError(carrier_id, f"HTTP {response.status_code} from {url}")
        if response.status_code >= 400:
            raise CarrierRequestError(
                carrier_id,
                f"HTTP {response.status_code} from {url}: {response.text[:200]}",
            )
        try:
            return response.json()
        except ValueError as e:
            raise CarrierTransportError(carrier_id, f"invalid JSON from {url}") from e

    def create_shipment(self, request: ShipmentRequest) -> CarrierShipment:
        data = self._request(
            request.carrier_id,
            "POST",
            "shipments",
            json=request.model_dump(mode="json"),
        )
        try:
            shipment = CarrierShipment.model_validate(data)
        except ValidationError as e:
            raise CarrierTransportError(request.carrier_id, f"unexpected shipment response: {e}") from e
        logger.info(f"[{request.carrier_id}] shipment booked for {request.order_id}: {shipment.tracking_id}")
        return shipment

    def poll_tracking(self, carrier_id: str, tracking_id: str) -> list[RawTrackingEvent]:
        data = self._request(carrier_id, "GET", f"tracking/{tracking_id}")
        events = []
        try:
            for item in data.get("events", []):
                events.append(RawTrackingEvent(
                    external_event_id=item.get("event_id"),
                    raw_status=item["status"],
                    occurred_at=item["timestamp"],
                    location=item.get("location") or "",
                    remarks=item.get("remarks"),
                ))
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            raise CarrierTransportError(carrier_id, f"unexpected tracking response: {e}") from e
        return events

    def close(self) -> None:
        if self._owns_client:
            self._http.close()


# =============================================================================
# Fake client
# =============================================================================

class FakeCarrierClient(CarrierClient):
    """
    Deterministic carrier for tests, demos and local development.

    Tracking ids are ``<carrier prefix><8 digit counter>``. Failures can be
    scripted with ``fail_next`` or switched on for every call with
    ``configure(should_succeed=False)``. Tracking events are whatever was
    registered with ``add_tracking_event``.
    """

    def __init__(self, registry: Optional[CarrierRegistry] = None, clock: Optional[Clock] = None):
        self.registry = registry
        self.clock = clock or Clock()
        self.should_succeed = True
        self.failure_reason = "Carrier unavailable"
        self.before_create: Optional[Callable[[ShipmentRequest], None]] = None
        self.create_calls: list[ShipmentRequest] = []
        self.poll_calls: list[tuple[str, str]] = []
        self._scripted_failures: list[Exception] = []
        self._tracking: dict[str, list[RawTrackingEvent]] = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def configure(self, should_succeed: bool = True, failure_reason: str = "Carrier unavailable"):
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def fail_next(self, count: int = 1, carrier_id: str = "fake", retryable: bool = True):
        """Queue ``count`` failures for the next calls (create or poll)."""
        error_type = CarrierTransportError if retryable else CarrierRequestError
        with self._lock:
            for _ in range(count):
                self._scripted_failures.append(error_type(carrier_id, "scripted failure"))

    def add_tracking_event(self, tracking_id: str, event: RawTrackingEvent):
        with self._lock:
            self._tracking.setdefault(tracking_id, []).append(event)

    def _maybe_fail(self, carrier_id: str):
        with self._lock:
            if self._scripted_failures:
                raise self._scripted_failures.pop(0)
        if not self.should_succeed:
            raise CarrierTransportError(carrier_id, self.failure_reason)

    def _tracking_prefix(self, carrier_id: str) -> str:
        carrier = self.registry.find(carrier_id) if self.registry else None
        return carrier.tracking_prefix if carrier else "TRK"

    def create_shipment(self, request: ShipmentRequest) -> CarrierShipment:
        with self._lock:
            self.create_calls.append(request)
        self._maybe_fail(request.carrier_id)
        if self.before_create:
            self.before_create(request)

        n = next(self._counter)
        carrier = self.registry.find(request.carrier_id) if self.registry else None
        days = carrier.avg_transit_days if carrier else 3
        return CarrierShipment(
            tracking_id=f"{self._tracking_prefix(request.carrier_id)}{n:08d}",
            carrier_ref=f"REF_{n:06d}",
            estimated_delivery=self.clock.now() + timedelta(days=days),
        )

    def poll_tracking(self, carrier_id: str, tracking_id: str) -> list[RawTrackingEvent]:
        with self._lock:
            self.poll_calls.append((carrier_id, tracking_id))
        self._maybe_fail(carrier_id)
        with self._lock:
            return list(self._tracking.get(tracking_id, []))
