"""Unit tests for the error taxonomy and retry helpers."""

import pytest

from tradeflow.core.errors import (
    ErrorType,
    ExternalServiceError,
    PhaseExecutionError,
    ValidationError,
    VendorAPIError,
    classify_error,
)
from tradeflow.core.resilience import CircuitBreaker, CircuitBreakerState, RetryPolicy, execute_with_retry


class TestClassifyError:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Rate limit reached for gpt-4o", ErrorType.RATE_LIMIT),
            ("Error code: 429", ErrorType.RATE_LIMIT),
            ("You exceeded your current quota", ErrorType.RATE_LIMIT),
            ("Incorrect API key provided", ErrorType.API_KEY),
            ("401 Unauthorized", ErrorType.API_KEY),
            ("Request timed out", ErrorType.TIMEOUT),
            ("something else broke", ErrorType.OTHER),
        ],
    )
    def test_messages(self, message, expected):
        assert classify_error(RuntimeError(message)) is expected

    def test_phase_error_keeps_its_type(self):
        assert classify_error(PhaseExecutionError("boom", error_type=ErrorType.AI_ERROR)) is ErrorType.AI_ERROR

    def test_default(self):
        assert classify_error("weird", default=ErrorType.DATA_FETCH) is ErrorType.DATA_FETCH


def test_to_dict():
    error = ValidationError("Missing required fields: ticker", details={"missing": ["ticker"]})

    assert error.status_code == 400
    assert error.to_dict() == {
        "code": "validation_error",
        "message": "Missing required fields: ticker",
        "details": {"missing": ["ticker"]},
    }
    assert "details" not in ValidationError().to_dict()


@pytest.mark.asyncio
class TestExecuteWithRetry:
    async def test_retries_then_succeeds(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset")
            return "ok"

        policy = RetryPolicy(max_attempts=3, initial_backoff=0, jitter=0)

        assert await execute_with_retry(flaky, retry_policy=policy) == "ok"
        assert len(calls) == 3

    async def test_exhaustion_raises_failure_class(self):
        def always_fails():
            raise ConnectionError("reset")

        policy = RetryPolicy(max_attempts=2, initial_backoff=0, jitter=0)

        with pytest.raises(ExternalServiceError) as exc_info:
            await execute_with_retry(
                always_fails,
                retry_policy=policy,
                failure_exception_cls=ExternalServiceError,
            )

        assert exc_info.value.details["attempts"] == 2

    async def test_rejected_key_is_not_retried(self):
        calls = []

        async def unauthorized():
            calls.append(1)
            raise RuntimeError("401 Unauthorized")

        policy = RetryPolicy(max_attempts=3, initial_backoff=0, jitter=0)

        with pytest.raises(VendorAPIError) as exc_info:
            await execute_with_retry(unauthorized, retry_policy=policy)

        assert len(calls) == 1
        assert exc_info.value.details["attempts"] == 1

    async def test_default_failure_class(self):
        async def always_fails():
            raise ConnectionError("reset")

        with pytest.raises(VendorAPIError):
            await execute_with_retry(always_fails, retry_policy=RetryPolicy(max_attempts=1))


def test_circuit_breaker_opens_after_threshold():
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60, name="broker")

    breaker.record_failure()
    assert breaker.allows_request() is True
    breaker.record_failure()

    assert breaker.state is CircuitBreakerState.OPEN
    assert breaker.allows_request() is False
