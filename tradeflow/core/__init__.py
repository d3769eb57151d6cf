"""Core utilities for the tradeflow engine."""

from .context import (
    analysis_log_context,
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from .errors import (
    AnalysisCanceled,
    CircuitBreakerOpenError,
    DuplicateOrderError,
    ErrorType,
    ExternalServiceError,
    InsufficientFundsError,
    PhaseExecutionError,
    ResourceNotFoundError,
    TradeflowError,
    ValidationError,
    VendorAPIError,
    classify_error,
)
from .resilience import CircuitBreaker, CircuitBreakerState, RetryPolicy, execute_with_retry

__all__ = [
    "AnalysisCanceled",
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitBreakerState",
    "DuplicateOrderError",
    "ErrorType",
    "ExternalServiceError",
    "InsufficientFundsError",
    "PhaseExecutionError",
    "ResourceNotFoundError",
    "RetryPolicy",
    "TradeflowError",
    "ValidationError",
    "VendorAPIError",
    "analysis_log_context",
    "classify_error",
    "execute_with_retry",
    "get_correlation_id",
    "reset_correlation_id",
    "set_correlation_id",
]
