"""
Thread-safe circuit breaker guarding the external NAV source.

Once the source starts rejecting requests (HTTP 429), further calls are
refused until a recovery window has elapsed, so a sync run backs off as a
whole instead of every worker hammering the source independently.

States:
- CLOSED: Normal operation, calls proceed
- OPEN: Rate limited, all calls are rejected immediately
- HALF_OPEN: Recovery window elapsed, a limited number of trial calls allowed
"""
import threading
import time
from enum import Enum
from dataclasses import dataclass
from typing import Callable, Optional

from navhub.core.logging_config import get_main_logger

logger = get_main_logger()


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""
    failure_threshold: int = 2      # Rate-limit rejections before opening
    recovery_timeout: float = 30.0  # Seconds before transitioning to half-open
    half_open_max_calls: int = 1    # Probe calls allowed in half-open state


class CircuitOpenError(Exception):
    """Raised when a call is refused because the circuit is open."""

    def __init__(self, message: str = "Circuit breaker is open - NAV source rate limited"):
        self.message = message
        super().__init__(self.message)


class CircuitBreaker:
    """
    Circuit breaker for the NAV source.

    Usage:
        if breaker.can_proceed():
            try:
                document = await client.fetch_scheme_document(code)
                breaker.record_success()
            except RateLimitError:
                breaker.record_failure()
                raise
        else:
            raise CircuitOpenError()

    The clock is injectable so tests can move time forward without sleeping.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._clock = clock
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN -> HALF_OPEN once the window has elapsed."""
        with self._lock:
            self._maybe_transition_to_half_open()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def time_until_half_open(self) -> Optional[float]:
        """Seconds until the circuit lets a trial call through, or None when not OPEN."""
        with self._lock:
            if self._state != CircuitState.OPEN or self._opened_at is None:
                return None
            remaining = self.config.recovery_timeout - (self._clock() - self._opened_at)
            return max(0.0, remaining)

    def can_proceed(self) -> bool:
        """Check (and reserve, in HALF_OPEN) permission for one call."""
        with self._lock:
            self._maybe_transition_to_half_open()

            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls < self.config.half_open_max_calls:
                    self._half_open_calls += 1
                    return True
            return False

    def record_success(self) -> None:
        """A call went through; closes a half-open circuit."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit breaker [{self.name}]: HALF_OPEN -> CLOSED (success)")
                self._state = CircuitState.CLOSED
                self._half_open_calls = 0
            self._failure_count = 0

    def record_failure(self, reset_timeout: float | None = None) -> None:
        """
        A call was rejected by the source.

        Args:
            reset_timeout: Override the recovery window, e.g. from a Retry-After header.
        """
        with self._lock:
            self._failure_count += 1
            if reset_timeout:
                self.config.recovery_timeout = reset_timeout

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit breaker [{self.name}]: HALF_OPEN -> OPEN (failure in half-open)")
                self._open()
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
                logger.warning(
                    f"Circuit breaker [{self.name}]: CLOSED -> OPEN "
                    f"(failures={self._failure_count}, threshold={self.config.failure_threshold})"
                )
                self._open()

    def reset(self) -> None:
        """Reset circuit breaker to initial closed state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._half_open_calls = 0

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._half_open_calls = 0

    def _maybe_transition_to_half_open(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            elapsed = self._clock() - self._opened_at
            if elapsed >= self.config.recovery_timeout:
                logger.info(
                    f"Circuit breaker [{self.name}]: OPEN -> HALF_OPEN "
                    f"(elapsed={elapsed:.1f}s >= timeout={self.config.recovery_timeout}s)"
                )
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0

    def get_stats(self) -> dict:
        """Circuit breaker statistics for the status endpoint."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.config.failure_threshold,
                "recovery_timeout": self.config.recovery_timeout,
                "time_until_half_open": self.time_until_half_open,
            }
