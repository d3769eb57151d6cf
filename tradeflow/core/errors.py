"""Exception hierarchy and error taxonomy for the decision pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, TypeVar, Union

from fastapi import status


class ErrorType(str, Enum):
    """Failure categories recorded on analyses and workflow steps."""

    RATE_LIMIT = "rate_limit"
    API_KEY = "api_key"
    AI_ERROR = "ai_error"
    DATA_FETCH = "data_fetch"
    DATABASE = "database"
    TIMEOUT = "timeout"
    OTHER = "other"


class TradeflowError(Exception):
    """Base class for application-specific exceptions."""

    default_message = "An unexpected error occurred."
    code = "tradeflow_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.code = (code or self.code).lower().replace(" ", "_")
        self.status_code = status_code or self.status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the exception to a JSON-ready dictionary."""
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(TradeflowError):
    """Raised when user input fails validation rules."""

    default_message = "Request validation failed."
    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class ResourceNotFoundError(TradeflowError):
    """Raised when a requested resource cannot be found."""

    default_message = "Requested resource was not found."
    code = "resource_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ExternalServiceError(TradeflowError):
    """Raised when an upstream service fails."""

    default_message = "Upstream service is unavailable."
    code = "external_service_error"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class VendorAPIError(ExternalServiceError):
    """Raised when a brokerage or AI provider request fails."""

    default_message = "Vendor API call failed."
    code = "vendor_api_error"
    status_code = status.HTTP_502_BAD_GATEWAY


class DuplicateOrderError(ExternalServiceError):
    """Raised when the broker already holds an order with this client order id."""

    default_message = "An order with this client order id already exists."
    code = "duplicate_order"
    status_code = status.HTTP_409_CONFLICT


class InsufficientFundsError(TradeflowError):
    """Raised when an operation cannot proceed because of capital constraints."""

    default_message = "Insufficient funds to complete the operation."
    code = "insufficient_funds"
    status_code = status.HTTP_409_CONFLICT


class CircuitBreakerOpenError(ExternalServiceError):
    """Raised when a circuit breaker prevents an external call."""

    default_message = "Circuit breaker is open for this dependency."
    code = "circuit_breaker_open"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class PhaseExecutionError(TradeflowError):
    """Unrecoverable failure inside a workflow phase.

    The phase and the whole analysis are marked ``error`` with
    ``error_type``; no order is submitted.
    """

    default_message = "Workflow phase failed."
    code = "phase_execution_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        error_type: ErrorType = ErrorType.OTHER,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details={"error_type": error_type.value, **(details or {})})
        self.error_type = error_type


class AnalysisCanceled(TradeflowError):
    """Raised at a cancellation checkpoint when the analysis must stop."""

    default_message = "Analysis was canceled."
    code = "analysis_canceled"
    status_code = status.HTTP_409_CONFLICT


TAE = TypeVar("TAE", bound=TradeflowError)


_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "quota", "insufficient_quota", "429")
_API_KEY_MARKERS = ("api key", "api_key", "invalid key", "incorrect api key", "401", "unauthorized")
_TIMEOUT_MARKERS = ("timeout", "timed out")


def classify_error(
    error: Union[BaseException, str],
    default: ErrorType = ErrorType.OTHER,
) -> ErrorType:
    """Map an exception or message onto the error taxonomy."""
    if isinstance(error, PhaseExecutionError):
        return error.error_type

    text = str(error).lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return ErrorType.RATE_LIMIT
    if any(marker in text for marker in _API_KEY_MARKERS):
        return ErrorType.API_KEY
    if any(marker in text for marker in _TIMEOUT_MARKERS):
        return ErrorType.TIMEOUT
    return default


__all__ = [
    "AnalysisCanceled",
    "CircuitBreakerOpenError",
    "ErrorType",
    "ExternalServiceError",
    "InsufficientFundsError",
    "PhaseExecutionError",
    "ResourceNotFoundError",
    "TradeflowError",
    "ValidationError",
    "VendorAPIError",
    "TAE",
    "classify_error",
]
