"""
Circuit breaker for calls to external data providers.

After ``failure_threshold`` consecutive failures the breaker opens and
rejects calls with ``CircuitOpenError`` until ``recovery_timeout``
seconds have passed.  It then lets up to ``half_open_max_calls`` trial
calls through; one success closes it again, one failure re-opens it.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(RuntimeError):
    """Raised when a call is rejected because the circuit is open."""


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class CircuitBreaker:
    """Track failures of one external dependency and short-circuit calls."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 3,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.state = CircuitState.CLOSED
            self.failures = 0
            self.last_failure_time: Optional[float] = None
            self.next_attempt_time: Optional[float] = None
            self._half_open_calls = 0

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _before_call(self) -> None:
        with self._lock:
            if self.state == CircuitState.OPEN:
                if self.next_attempt_time is not None and time.time() >= self.next_attempt_time:
                    logger.info("Circuit %s entering half-open state", self.name)
                    self.state = CircuitState.HALF_OPEN
                    self._half_open_calls = 0
                else:
                    raise CircuitOpenError(f"Circuit breaker {self.name} is open")
            if self.state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    raise CircuitOpenError(f"Circuit breaker {self.name} is half-open and saturated")
                self._half_open_calls += 1

    def record_success(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                logger.info("Circuit %s recovered", self.name)
            self.state = CircuitState.CLOSED
            self.failures = 0
            self.next_attempt_time = None
            self._half_open_calls = 0

    def record_failure(self) -> None:
        with self._lock:
            self.failures += 1
            self.last_failure_time = time.time()
            if self.state == CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
                self.state = CircuitState.OPEN
                self.next_attempt_time = self.last_failure_time + self.recovery_timeout
                logger.warning(
                    "Circuit %s opened after %d failures", self.name, self.failures
                )

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Invoke ``func`` through the breaker.

        Raises ``CircuitOpenError`` without calling ``func`` while the
        circuit is open.  Exceptions from ``func`` are recorded as
        failures and re-raised.
        """
        self._before_call()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "failures": self.failures,
                "last_failure_time": _iso(self.last_failure_time),
                "next_attempt_time": _iso(self.next_attempt_time),
            }
