"""Retry and circuit-breaking around brokerage and AI provider calls.

Failures are classified with :func:`classify_error` before a retry is
scheduled, so a rejected API key fails on its first attempt while rate
limits and dropped connections back off and try again.
"""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

import structlog

from ..config import get_settings
from .errors import TAE, CircuitBreakerOpenError, ErrorType, TradeflowError, VendorAPIError, classify_error

T = TypeVar("T")

logger = structlog.get_logger(__name__)

# Retrying these only repeats the same rejection
PERMANENT_ERROR_TYPES: Tuple[ErrorType, ...] = (ErrorType.API_KEY,)


@dataclass(slots=True)
class RetryPolicy:
    """Attempt budget and exponential backoff for one kind of outbound call."""

    max_attempts: int = 3
    initial_backoff: float = 0.5
    max_backoff: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1
    retry_exceptions: Tuple[type[BaseException], ...] = (Exception,)
    permanent_error_types: Tuple[ErrorType, ...] = PERMANENT_ERROR_TYPES

    @classmethod
    def for_vendor_calls(cls, max_attempts: Optional[int] = None) -> "RetryPolicy":
        """Policy for brokerage and AI requests, from ``RETRY_*`` settings."""
        settings = get_settings()
        return cls(
            max_attempts=settings.retry_default_attempts if max_attempts is None else max_attempts,
            initial_backoff=settings.retry_default_backoff_seconds,
            max_backoff=settings.retry_max_backoff_seconds,
        )

    @classmethod
    def for_phase_timeouts(cls, max_retries: int) -> "RetryPolicy":
        """Policy for re-running a timed-out phase, from ``PHASE_RETRY_*`` settings."""
        settings = get_settings()
        return cls(
            max_attempts=max_retries + 1,
            initial_backoff=settings.phase_retry_backoff_seconds,
            max_backoff=settings.phase_retry_max_backoff_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before attempt ``attempt + 1``; ``attempt`` is 1-indexed."""
        delay = min(self.initial_backoff * (self.multiplier ** max(attempt - 1, 0)), self.max_backoff)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay

    def is_retryable(self, exc: BaseException) -> bool:
        if not isinstance(exc, self.retry_exceptions):
            return False
        return classify_error(exc) not in self.permanent_error_types


class CircuitBreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops calling a provider after ``failure_threshold`` consecutive failures.

    After ``recovery_timeout`` seconds one trial request is let through; its
    result closes the breaker again or re-opens it.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        name: str | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name or "provider"
        self.state = CircuitBreakerState.CLOSED
        self.failures = 0
        self._opened_at: float | None = None

    def allows_request(self) -> bool:
        if self.state != CircuitBreakerState.OPEN:
            return True
        if self._opened_at is not None and time.monotonic() - self._opened_at >= self.recovery_timeout:
            self.state = CircuitBreakerState.HALF_OPEN
            logger.info("Circuit breaker half-open", circuit=self.name)
            return True
        return False

    def record_success(self) -> None:
        if self.state != CircuitBreakerState.CLOSED:
            logger.info("Circuit breaker closed", circuit=self.name)
        self.state = CircuitBreakerState.CLOSED
        self.failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == CircuitBreakerState.HALF_OPEN or self.failures >= self.failure_threshold:
            self.state = CircuitBreakerState.OPEN
            self._opened_at = time.monotonic()
            logger.warning("Circuit breaker opened", circuit=self.name, failures=self.failures)


async def _call_once(func: Callable[..., Any], args: Tuple[Any, ...], kwargs: Dict[str, Any], in_thread: bool) -> Any:
    if in_thread:
        # SDK clients such as alpaca-py are blocking
        return await asyncio.to_thread(func, *args, **kwargs)
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


async def execute_with_retry(
    func: Callable[..., Awaitable[T] | T],
    *args: Any,
    retry_policy: RetryPolicy,
    circuit_breaker: Optional[CircuitBreaker] = None,
    metadata: Optional[Dict[str, Any]] = None,
    failure_exception_cls: Type[TAE] = VendorAPIError,
    run_in_executor: bool = False,
    **kwargs: Any,
) -> T:
    """Call ``func`` until it succeeds or the policy gives up.

    Exceptions outside ``retry_policy.retry_exceptions`` propagate unchanged.
    Otherwise the last failure is wrapped in ``failure_exception_cls`` with
    ``attempts`` and ``last_error`` in its details and chained as the cause.
    """
    max_attempts = max(1, retry_policy.max_attempts)
    metadata = metadata or {}
    if not issubclass(failure_exception_cls, TradeflowError):
        failure_exception_cls = VendorAPIError

    attempt = 0
    last_error: BaseException | None = None
    while attempt < max_attempts:
        attempt += 1
        if circuit_breaker is not None and not circuit_breaker.allows_request():
            raise CircuitBreakerOpenError(
                message=f"Circuit breaker open for {circuit_breaker.name}.",
                details={"circuit": circuit_breaker.name, **metadata},
            )

        try:
            result = await _call_once(func, args, kwargs, run_in_executor)
        except retry_policy.retry_exceptions as exc:  # type: ignore[misc]
            last_error = exc
            if circuit_breaker is not None:
                circuit_breaker.record_failure()
            if not retry_policy.is_retryable(exc):
                logger.warning("Permanent provider error, not retrying", error=str(exc), **metadata)
                break
            if attempt < max_attempts:
                delay = retry_policy.backoff(attempt)
                logger.warning(
                    "Retryable provider error",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay=round(delay, 3),
                    error=str(exc),
                    **metadata,
                )
                await asyncio.sleep(delay)
            continue
        except Exception:
            if circuit_breaker is not None:
                circuit_breaker.record_failure()
            raise

        if circuit_breaker is not None:
            circuit_breaker.record_success()
        return result

    raise failure_exception_cls(
        message=f"Operation failed after {attempt} attempts: {last_error}",
        details={**metadata, "attempts": attempt, "last_error": repr(last_error)},
    ) from last_error


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitBreakerState",
    "PERMANENT_ERROR_TYPES",
    "RetryPolicy",
    "execute_with_retry",
]
