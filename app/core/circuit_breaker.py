"""Circuit breaker for channel provider calls.

One breaker per channel. A provider that keeps failing is skipped (the
channel attempt is recorded as failed with reason ``circuit_open``)
until the recovery timeout passes, after which a probe call is let
through.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from app.core.config import Settings

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests pass through
    OPEN = "open"  # Failure threshold reached, requests fail fast
    HALF_OPEN = "half_open"  # Testing if provider is back


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 1


class CircuitBreaker:
    """Circuit breaker guarding one provider.

    State transitions:
    - CLOSED -> OPEN: consecutive failures >= failure_threshold
    - OPEN -> HALF_OPEN: recovery_timeout elapsed
    - HALF_OPEN -> CLOSED: success_threshold consecutive successes
    - HALF_OPEN -> OPEN: any failure
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def can_execute(self) -> bool:
        """Check if a call may go out now."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._opened_at or 0.0)
                if elapsed < self.config.recovery_timeout:
                    return False
                logger.info(f"Circuit breaker '{self.name}' entering half-open state")
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    logger.info(f"Circuit breaker '{self.name}' closed")
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
            else:
                self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit breaker '{self.name}' reopened after failed probe")
                self._trip()
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                logger.error(
                    f"Circuit breaker '{self.name}' opened after {self._failure_count} "
                    "consecutive failures"
                )
                self._trip()

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._success_count = 0


class CircuitBreakerRegistry:
    """Lazily created breakers keyed by channel."""

    def __init__(self, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitBreakerRegistry":
        return cls(
            CircuitBreakerConfig(
                failure_threshold=settings.circuit_failure_threshold,
                recovery_timeout=settings.circuit_recovery_seconds,
            )
        )

    def get(self, channel: str) -> CircuitBreaker:
        if channel not in self._breakers:
            self._breakers[channel] = CircuitBreaker(f"channel:{channel}", self._config, self._clock)
        return self._breakers[channel]

    def states(self) -> dict[str, str]:
        return {channel: breaker.state.value for channel, breaker in self._breakers.items()}
