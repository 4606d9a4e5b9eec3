"""
Shared error taxonomy and retry helpers for the NAV pipeline.
"""
from __future__ import annotations

from enum import Enum
from typing import Awaitable, Callable, TypeVar
import asyncio

from navhub.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitOpenError
from navhub.core.logging_config import get_main_logger, get_background_logger

# Initialize loggers
logger = get_main_logger()
bg_logger = get_background_logger()

T = TypeVar('T')


class ErrorKind(str, Enum):
    """Why a scheme did not complete in a run."""
    FETCH = "fetch"
    RATE_LIMITED = "rate_limited"
    PARSE = "parse"
    NO_DATA = "no_data"
    PERSISTENCE = "persistence"
    COMPUTE = "compute"
    CANCELLED = "cancelled"


class NavSyncError(Exception):
    """Base class for NAV pipeline errors."""


class TransientFetchError(NavSyncError):
    """Network timeout, non-2xx response or unusable document from the source."""


class RateLimitError(TransientFetchError):
    """The source rejected the request because of its rate limit."""

    def __init__(self, message: str = "NAV source rate limit hit", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class PersistenceError(NavSyncError):
    """A batch write failed and was rolled back."""


class DataQualityError(NavSyncError):
    """Stored data violates an invariant, e.g. a non-positive NAV."""


class FatalSyncError(NavSyncError):
    """The run cannot proceed at all (store or registry unreachable)."""


class SyncAlreadyRunningError(NavSyncError):
    """A sync run is already in progress on this orchestrator."""


def error_kind_for(error: BaseException) -> ErrorKind:
    """Map an exception raised for one scheme to its failure kind."""
    if isinstance(error, (RateLimitError, CircuitOpenError)):
        return ErrorKind.RATE_LIMITED
    if isinstance(error, PersistenceError):
        return ErrorKind.PERSISTENCE
    if isinstance(error, DataQualityError):
        return ErrorKind.COMPUTE
    return ErrorKind.FETCH


def build_source_circuit_breaker(**kwargs) -> CircuitBreaker:
    """Circuit breaker for the external NAV source."""
    return CircuitBreaker(
        CircuitBreakerConfig(
            failure_threshold=2,      # Open after 2 rate-limit rejections
            recovery_timeout=30.0,    # Wait 30 seconds before probing again
            half_open_max_calls=1     # Allow 1 trial call in half-open
        ),
        name="nav_source",
        **kwargs,
    )


async def async_retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    breaker: CircuitBreaker | None = None,
    max_attempts: int = 2,
    initial_delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await func, retrying transient fetch errors with non-blocking delays.

    The breaker is consulted before every attempt. A rate-limit rejection is
    recorded on it and ends the retry loop immediately: backing off is the
    breaker's job, not the individual worker's.
    """
    delay = initial_delay
    max_attempts = max(1, max_attempts)
    last_exception: BaseException | None = None

    for attempt in range(1, max_attempts + 1):
        if breaker is not None and not breaker.can_proceed():
            raise CircuitOpenError("Circuit breaker is open - NAV source rate limited")

        try:
            result = await func()
        except RateLimitError as e:
            if breaker is not None:
                breaker.record_failure(reset_timeout=e.retry_after)
            bg_logger.warning(f"Rate limit hit (attempt {attempt}/{max_attempts}) - failing fast")
            raise
        except TransientFetchError as e:
            last_exception = e
            if attempt < max_attempts:
                bg_logger.debug(f"Transient fetch error (attempt {attempt}/{max_attempts}): {e}")
                await sleep(delay)
                delay *= backoff_multiplier
                continue
            raise
        else:
            if breaker is not None:
                breaker.record_success()
            return result

    raise last_exception  # pragma: no cover
