"""
Recovery Strategies

Backoff policy and circuit breaker used by the retry executor.
All durations are integer milliseconds.
"""

import logging
import math
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from .errors import ConfigurationError

Clock = Callable[[], float]


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"       # Normal operation
    OPEN = "open"           # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a ceiling and additive jitter."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    exponential_base: float = 2.0
    jitter_fraction: float = 0.1

    def __post_init__(self) -> None:
        for name in ("max_attempts", "base_delay_ms", "max_delay_ms", "exponential_base"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"RetryPolicy.{name} must be positive, got {value!r}")
        if not 0 <= self.jitter_fraction < 1:
            raise ConfigurationError(
                f"RetryPolicy.jitter_fraction must be in [0, 1), got {self.jitter_fraction!r}"
            )

    def base_delay(self, attempt: int) -> float:
        """Delay before jitter: base * exp_base^(attempt-1), capped at max."""
        if attempt < 1:
            raise ValueError(f"attempt numbering starts at 1, got {attempt}")
        try:
            raw = self.base_delay_ms * (self.exponential_base ** (attempt - 1))
        except OverflowError:
            raw = math.inf
        return min(raw, self.max_delay_ms)

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> int:
        """Delay in milliseconds to wait after failed attempt `attempt`."""
        delay = self.base_delay(attempt)
        jittered = math.floor(delay + delay * self.jitter_fraction * rng())
        return min(jittered, self.max_delay_ms)


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5             # Failures before opening
    recovery_timeout_ms: int = 60000       # Time before a trial call is allowed
    monitoring_period_ms: int = 300000     # Window kept for recent failures

    def __post_init__(self) -> None:
        for name in ("failure_threshold", "recovery_timeout_ms", "monitoring_period_ms"):
            value = getattr(self, name)
            if value <= 0:
                raise ConfigurationError(
                    f"CircuitBreakerConfig.{name} must be positive, got {value!r}"
                )


@dataclass
class FailureEntry:
    timestamp: float
    error: str


@dataclass
class BreakerState:
    """Mutable health record of one protected call-site."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    failures: Deque[FailureEntry] = field(default_factory=deque)


class CircuitBreaker:
    """
    Circuit breaker gating calls to a failing dependency.

    States:
    - CLOSED: Normal operation, counting failures
    - OPEN: Rejecting attempts until recovery_timeout_ms has elapsed
    - HALF_OPEN: Trial calls allowed; the first success closes the circuit

    failure_count only resets on success. The breaker itself does not limit
    concurrent trial calls in HALF_OPEN.
    """

    def __init__(
        self,
        name: str = "default",
        config: Optional[CircuitBreakerConfig] = None,
        clock: Clock = monotonic_ms,
        logger: Optional[logging.Logger] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState()

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def failure_count(self) -> int:
        return self._state.failure_count

    @property
    def last_failure_time(self) -> Optional[float]:
        return self._state.last_failure_time

    @property
    def recent_failures(self) -> List[FailureEntry]:
        return list(self._state.failures)

    def can_execute(self) -> bool:
        """Whether a new attempt may start. May move OPEN -> HALF_OPEN."""
        with self._lock:
            state = self._state
            if state.state == CircuitState.CLOSED:
                return True
            if state.state == CircuitState.HALF_OPEN:
                return True

            elapsed = self._clock() - (state.last_failure_time or 0.0)
            if elapsed >= self.config.recovery_timeout_ms:
                state.state = CircuitState.HALF_OPEN
                self.logger.info(f"Circuit breaker '{self.name}' entering half-open state")
                return True
            return False

    def on_success(self) -> None:
        with self._lock:
            previous = self._state.state
            self._state.failure_count = 0
            self._state.failures.clear()
            self._state.state = CircuitState.CLOSED
        if previous != CircuitState.CLOSED:
            self.logger.info(f"Circuit breaker '{self.name}' closed, service recovered")

    def on_failure(self, error: Optional[BaseException] = None) -> None:
        with self._lock:
            state = self._state
            now = self._clock()
            state.failure_count += 1
            state.last_failure_time = now
            state.failures.append(
                FailureEntry(timestamp=now, error=str(error) if error else "Unknown error")
            )

            cutoff = now - self.config.monitoring_period_ms
            while state.failures and state.failures[0].timestamp <= cutoff:
                state.failures.popleft()

            opened = False
            if state.failure_count >= self.config.failure_threshold:
                opened = state.state != CircuitState.OPEN
                state.state = CircuitState.OPEN
            count = state.failure_count

        if opened:
            self.logger.warning(
                f"Circuit breaker '{self.name}' opened after {count} failures"
            )

    def time_until_recovery(self) -> float:
        """Milliseconds until an OPEN breaker admits a trial call."""
        with self._lock:
            if self._state.state != CircuitState.OPEN or self._state.last_failure_time is None:
                return 0.0
            elapsed = self._clock() - self._state.last_failure_time
            return max(0.0, self.config.recovery_timeout_ms - elapsed)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.state.value,
                "failureCount": self._state.failure_count,
                "lastFailureTime": self._state.last_failure_time,
                "recentFailures": len(self._state.failures),
            }

    def reset(self) -> None:
        """Manually reset the circuit breaker (operator action)."""
        with self._lock:
            self._state = BreakerState()
        self.logger.info(f"Circuit breaker '{self.name}' manually reset")
