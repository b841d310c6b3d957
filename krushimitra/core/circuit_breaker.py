"""
CircuitBreaker - Upstream Weather Protection

Stops hammering the weather provider once it is clearly failing. While
the circuit is OPEN the cache skips the upstream call and degrades to
stale-or-fallback exactly as it would for a transient error.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Circuit tripped, requests fail fast to stale/fallback
- HALF_OPEN: Recovery trial, one request allowed to test

Configuration:
- failure_threshold: failures within failure_window that open the circuit
- recovery_timeout: seconds before a recovery trial is allowed

Only transient upstream failures are recorded. A missing API key is a
configuration problem and never trips the breaker.
"""
import threading
from dataclasses import dataclass
from typing import List, Dict, Any
import logging

from krushimitra.core.types import Clock, system_clock

logger = logging.getLogger(__name__)


class CircuitBreakerOpen(Exception):
    """Raised when circuit is open and the caller should degrade."""

    def __init__(self, name: str, last_failure_time: float, recovery_in: float):
        self.name = name
        self.last_failure_time = last_failure_time
        self.recovery_in = recovery_in
        super().__init__(
            f"CircuitBreaker '{name}' is OPEN. "
            f"Recovery in {recovery_in:.1f}s"
        )


@dataclass
class FailureRecord:
    """Record of a single failure."""
    timestamp: float
    error_type: str = "unknown"


class CircuitBreaker:
    """
    Thread-safe Circuit Breaker for upstream API protection.

    Usage:
        cb = CircuitBreaker(failure_threshold=5, recovery_timeout=60.0)

        try:
            cb.check_state()  # Raises CircuitBreakerOpen if OPEN
            payload = await provider.fetch(lat, lon)
            cb.record_success()
        except CircuitBreakerOpen:
            # serve stale or fallback
        except TransientError as e:
            cb.record_failure(error_type=e.code)
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        name: str = "weather_upstream",
        failure_window: float = 60.0,
        clock: Clock = system_clock,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.failure_window = failure_window
        self._clock = clock

        self._state = "CLOSED"
        self._failures: List[FailureRecord] = []
        self._last_failure_time: float = 0.0
        self._opened_at: float = 0.0

        self._total_failures = 0
        self._total_successes = 0

        self._lock = threading.RLock()

    @property
    def state(self) -> str:
        """Get current state, checking for automatic transition to HALF_OPEN."""
        with self._lock:
            if self._state == "OPEN":
                if self._clock() - self._opened_at >= self.recovery_timeout:
                    self._state = "HALF_OPEN"
                    logger.info(
                        f"CircuitBreaker '{self.name}' transitioned to HALF_OPEN "
                        f"after {self.recovery_timeout}s recovery timeout"
                    )
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            self._clean_old_failures()
            return len(self._failures)

    def check_state(self) -> None:
        """Raise CircuitBreakerOpen if requests are not allowed."""
        with self._lock:
            if self.state == "OPEN":
                recovery_in = max(
                    0.0,
                    self.recovery_timeout - (self._clock() - self._opened_at)
                )
                raise CircuitBreakerOpen(
                    name=self.name,
                    last_failure_time=self._last_failure_time,
                    recovery_in=recovery_in
                )

    def record_failure(self, error_type: str = "unknown") -> None:
        """Record a failure. Opens circuit if threshold reached."""
        with self._lock:
            now = self._clock()

            self._failures.append(FailureRecord(timestamp=now, error_type=error_type))
            self._last_failure_time = now
            self._total_failures += 1
            self._clean_old_failures()

            logger.debug(
                f"CircuitBreaker '{self.name}' recorded failure: {error_type}. "
                f"Count: {len(self._failures)}/{self.failure_threshold}"
            )

            if self._state == "HALF_OPEN":
                # Any failure in HALF_OPEN reopens immediately
                self._state = "OPEN"
                self._opened_at = now
                logger.warning(
                    f"CircuitBreaker '{self.name}' REOPENED from HALF_OPEN. "
                    f"Error: {error_type}"
                )
            elif self._state == "CLOSED" and len(self._failures) >= self.failure_threshold:
                self._state = "OPEN"
                self._opened_at = now
                logger.warning(
                    f"CircuitBreaker '{self.name}' OPENED after "
                    f"{len(self._failures)} failures. Last error: {error_type}"
                )

    def record_success(self) -> None:
        """Record a success. Closes circuit if in HALF_OPEN state."""
        with self._lock:
            self._total_successes += 1

            if self._state == "HALF_OPEN":
                self._state = "CLOSED"
                self._failures.clear()
                logger.info(
                    f"CircuitBreaker '{self.name}' CLOSED after successful recovery"
                )
            elif self._state == "CLOSED":
                self._failures.clear()

    def _clean_old_failures(self) -> int:
        """Drop failures outside the window (caller must hold lock)."""
        cutoff = self._clock() - self.failure_window
        old_count = len(self._failures)
        self._failures = [f for f in self._failures if f.timestamp >= cutoff]
        return old_count - len(self._failures)

    def get_metrics(self) -> Dict[str, Any]:
        """Get circuit breaker metrics for the health endpoint."""
        with self._lock:
            return {
                "name": self.name,
                "state": self.state,
                "failure_count": len(self._failures),
                "failure_threshold": self.failure_threshold,
                "total_failures": self._total_failures,
                "total_successes": self._total_successes,
                "opened_at": self._opened_at if self._state != "CLOSED" else None,
            }

    def reset(self) -> None:
        """Manually reset circuit breaker to CLOSED state."""
        with self._lock:
            self._state = "CLOSED"
            self._failures.clear()
            self._opened_at = 0.0
            logger.info(f"CircuitBreaker '{self.name}' manually reset to CLOSED")

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name='{self.name}', state='{self.state}', "
            f"failures={self.failure_count}/{self.failure_threshold})"
        )
