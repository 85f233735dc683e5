"""
Error taxonomy for the fulfillment service.

Design decisions:
- State-machine and precondition violations are raised to the immediate caller
- Carrier errors are split into retryable (transport) and non-retryable (request)
- Notification delivery failures are recorded on the notification, never raised
  to the code that triggered the notification
- Duplicate or out-of-order tracking events are NOT errors (see IngestResult)
"""

from typing import Optional


class FulfillmentError(Exception):
    """Base class for all errors raised by this service."""


class OrderNotFoundError(FulfillmentError, LookupError):
    """The requested order does not exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class InvalidTransitionError(FulfillmentError):
    """
    The requested status edge is not part of the order lifecycle graph.

    The order is left untouched when this is raised.
    """

    def __init__(self, order_id: str, from_status: str, to_status: str):
        self.order_id = order_id
        self.from_status = str(getattr(from_status, "value", from_status))
        self.to_status = str(getattr(to_status, "value", to_status))
        super().__init__(
            f"Invalid transition for order {order_id}: "
            f"{self.from_status} -> {self.to_status}"
        )


class InvalidPreconditionError(FulfillmentError):
    """An operation was attempted outside its required starting state."""

    def __init__(self, message: str, order_id: Optional[str] = None):
        self.order_id = order_id
        super().__init__(message)


class ConcurrentUpdateError(FulfillmentError):
    """An order kept changing underneath a transition; the write was abandoned."""

    def __init__(self, order_id: str, attempts: int):
        self.order_id = order_id
        self.attempts = attempts
        super().__init__(f"Order {order_id} changed concurrently {attempts} times, giving up")


class UnknownCarrierError(FulfillmentError, LookupError):
    """The carrier id is not in the registry."""

    def __init__(self, carrier_id: str):
        self.carrier_id = carrier_id
        super().__init__(f"Unknown carrier: {carrier_id}")


class NoEligibleCarrierError(FulfillmentError):
    """Rate shopping returned no carrier able to take the package."""


# =============================================================================
# Carrier errors
# =============================================================================

class CarrierError(FulfillmentError):
    """Base class for errors talking to a carrier API."""

    def __init__(self, carrier_id: str, message: str):
        self.carrier_id = carrier_id
        super().__init__(f"[{carrier_id}] {message}")


class CarrierTransportError(CarrierError):
    """Network failure, timeout or 5xx from the carrier. Retryable."""


class CarrierRequestError(CarrierError):
    """The carrier rejected the request (4xx). Not retryable."""


class CircuitOpenError(CarrierError):
    """The carrier's circuit breaker is open; the call was not attempted."""

    def __init__(self, carrier_id: str, retry_in: float):
        self.retry_in = retry_in
        super().__init__(carrier_id, f"circuit open, next attempt in {retry_in:.1f}s")


class CarrierUnavailableError(CarrierError):
    """Retry budget exhausted (or breaker open) calling a carrier."""

    def __init__(self, carrier_id: str, attempts: int, reason: str):
        self.attempts = attempts
        self.reason = reason
        super().__init__(carrier_id, f"unavailable after {attempts} attempt(s): {reason}")


# =============================================================================
# Notification errors
# =============================================================================

class NotificationDeliveryFailure(FulfillmentError):
    """A single channel send failed. Retried per channel, then recorded."""

    def __init__(self, channel: str, reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(f"{channel} delivery failed: {reason}")


class NotificationNotFoundError(FulfillmentError, LookupError):
    """No such notification in the user's inbox."""

    def __init__(self, notification_id: str):
        self.notification_id = notification_id
        super().__init__(f"Notification not found: {notification_id}")
