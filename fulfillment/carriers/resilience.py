"""
Resilience for carrier API calls: a circuit breaker per carrier and a bounded
tenacity retry around it.

Only transport failures (network errors, timeouts, 5xx) count against the
breaker and are retried. A 4xx means our request was wrong; retrying it
would not help and it says nothing about the carrier's health.
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from shared.config import Settings
from shared.exceptions import CarrierTransportError, CarrierUnavailableError, CircuitOpenError

logger = logging.getLogger("carrier_client")

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, calls rejected without trying
    HALF_OPEN = "half_open"  # Cooldown over, one trial call allowed


class CircuitBreaker:
    """
    Thread-safe circuit breaker for one carrier.

    CLOSED -> OPEN after ``failure_threshold`` consecutive transport failures.
    OPEN -> HALF_OPEN once ``recovery_timeout`` seconds have passed.
    HALF_OPEN lets a single trial call through; callers arriving while it is
    in flight are rejected like in OPEN. HALF_OPEN -> CLOSED when the trial
    succeeds, back to OPEN when it fails.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        time_source: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._time = time_source
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._stats = {
            "total_calls": 0,
            "successful_calls": 0,
            "failed_calls": 0,
            "rejected_calls": 0,
            "state_changes": 0,
        }

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh_state()
            return self._state

    def _refresh_state(self):
        if self._state == CircuitState.OPEN and self._time() - self._opened_at >= self.recovery_timeout:
            self._change_state(CircuitState.HALF_OPEN)

    def _change_state(self, new_state: CircuitState):
        old_state = self._state
        self._trial_in_flight = False
        self._state = new_state
        self._stats["state_changes"] += 1
        if new_state == CircuitState.OPEN:
            self._opened_at = self._time()
            logger.warning(
                f"Circuit breaker '{self.name}' {old_state.value} -> OPEN "
                f"after {self._failure_count} failure(s)"
            )
        else:
            logger.info(f"Circuit breaker '{self.name}' {old_state.value} -> {new_state.value}")
        if new_state == CircuitState.CLOSED:
            self._failure_count = 0

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run ``func`` under the breaker.

        Raises:
            CircuitOpenError: the breaker is open; ``func`` was not called
        """
        with self._lock:
            self._refresh_state()
            self._stats["total_calls"] += 1
            if self._state == CircuitState.OPEN:
                self._stats["rejected_calls"] += 1
                retry_in = max(0.0, self.recovery_timeout - (self._time() - self._opened_at))
                raise CircuitOpenError(self.name, retry_in)
            trial = self._state == CircuitState.HALF_OPEN
            if trial:
                if self._trial_in_flight:
                    self._stats["rejected_calls"] += 1
                    raise CircuitOpenError(self.name, 0.0)
                self._trial_in_flight = True

        try:
            result = func(*args, **kwargs)
        except CarrierTransportError:
            self._on_failure()
            raise
        except BaseException:
            # Not a health signal, but the trial slot must be released
            if trial:
                with self._lock:
                    self._trial_in_flight = False
            raise
        self._on_success()
        return result

    def _on_success(self):
        with self._lock:
            self._stats["successful_calls"] += 1
            if self._state == CircuitState.HALF_OPEN:
                self._change_state(CircuitState.CLOSED)
            self._failure_count = 0

    def _on_failure(self):
        with self._lock:
            self._stats["failed_calls"] += 1
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                self._change_state(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._change_state(CircuitState.OPEN)

    def reset(self):
        with self._lock:
            if self._state != CircuitState.CLOSED:
                self._change_state(CircuitState.CLOSED)
            self._failure_count = 0

    def get_stats(self) -> dict:
        with self._lock:
            self._refresh_state()
            return {**self._stats, "state": self._state.value, "failure_count": self._failure_count}


class CarrierCallPolicy:
    """
    Retry-with-backoff on top of per-carrier circuit breakers.

    ``call`` returns the carrier's answer or raises CarrierUnavailableError
    once the attempt budget is spent (or the breaker refuses the call).
    CarrierRequestError passes through untouched.
    """

    def __init__(
        self,
        settings: Settings,
        time_source: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.settings = settings
        self._time = time_source
        self._sleep = sleep or time.sleep
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def breaker(self, carrier_id: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(carrier_id)
            if breaker is None:
                breaker = self._breakers[carrier_id] = CircuitBreaker(
                    carrier_id,
                    failure_threshold=self.settings.breaker_failure_threshold,
                    recovery_timeout=self.settings.breaker_recovery_seconds,
                    time_source=self._time,
                )
            return breaker

    def _retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(CarrierTransportError),
            stop=stop_after_attempt(self.settings.carrier_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.carrier_backoff_initial,
                max=self.settings.carrier_backoff_max,
            ) + wait_random(0, self.settings.carrier_backoff_jitter),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
            sleep=self._sleep,
        )

    def call(self, carrier_id: str, operation: str, func: Callable[..., T], *args: Any) -> T:
        breaker = self.breaker(carrier_id)
        attempts = 0

        def attempt() -> T:
            nonlocal attempts
            attempts += 1
            return breaker.call(func, *args)

        try:
            return self._retrying()(attempt)
        except (CarrierTransportError, CircuitOpenError) as e:
            logger.error(f"{operation} with {carrier_id} failed after {attempts} attempt(s): {e}")
            raise CarrierUnavailableError(carrier_id, attempts, str(e)) from e

    def get_stats(self) -> dict[str, dict]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.get_stats() for b in breakers}
