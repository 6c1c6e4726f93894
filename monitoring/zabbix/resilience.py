"""
Circuit Breaker for the Zabbix fetch path.

States:
    CLOSED: Normal operation, fetches pass through
    OPEN: Failing fast, the poll cycle fails without calling Zabbix
    HALF_OPEN: One trial fetch after the recovery timeout

A single success in HALF_OPEN closes the circuit; a failure
reopens it.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from core.clock import ClockProtocol, SystemClock, to_iso8601


logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(Exception):
    """Raised when the circuit is open and rejecting calls."""

    def __init__(self, name: str, retry_in_seconds: float):
        super().__init__(
            f"Circuit breaker '{name}' is open, retry in {retry_in_seconds:.0f}s"
        )
        self.retry_in_seconds = retry_in_seconds


class CircuitBreaker:
    """
    Failure counter with timed recovery.

    Attributes:
        name: Identifier used in logs
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds to stay open before a trial call
    """

    def __init__(
        self,
        name: str = "zabbix",
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Optional[ClockProtocol] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock or SystemClock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[datetime] = None
        self._last_failure_at: Optional[datetime] = None

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._seconds_open() >= self.recovery_timeout:
            self._transition_to(CircuitState.HALF_OPEN)
        return self._state

    def _seconds_open(self) -> float:
        if self._opened_at is None:
            return 0.0
        return (self._clock.now() - self._opened_at).total_seconds()

    def _transition_to(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        logger.warning(f"Circuit '{self.name}': {self._state.value} -> {new_state.value}")
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock.now()
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._opened_at = None

    def before_call(self) -> None:
        """
        Gate a call.

        Raises:
            CircuitOpenError: While OPEN and before the recovery timeout
        """
        if self.state == CircuitState.OPEN:
            raise CircuitOpenError(
                self.name,
                max(0.0, self.recovery_timeout - self._seconds_open()),
            )

    def record_success(self) -> None:
        self._failure_count = 0
        self._transition_to(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock.now()

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
        elif self._failure_count >= self.failure_threshold:
            self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        self._transition_to(CircuitState.CLOSED)
        self._failure_count = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout_seconds": self.recovery_timeout,
            "last_failure_at": to_iso8601(self._last_failure_at),
        }
