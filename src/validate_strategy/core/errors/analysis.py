"""Analysis error taxonomy.

Every failure that crosses the orchestration boundary is converted into an
``AnalysisError`` exactly once (see :func:`classify_error`).  Downstream retry,
circuit breaker and notification logic branches only on the structured
``category`` / ``is_retryable`` fields, never on raw exception matching.

Codes are grouped by range:
    1xxx  API errors (LLM provider)
    2xxx  Network errors
    3xxx  Validation errors
    4xxx  Processing errors
    5xxx  System errors
    6xxx  Recovery errors
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx


class AnalysisErrorCode(str, Enum):
    """Stable identifiers for each analysis failure type."""

    API_TIMEOUT = "ERR_1001"
    API_RATE_LIMIT = "ERR_1002"
    API_AUTHENTICATION = "ERR_1003"
    API_INVALID_RESPONSE = "ERR_1004"
    API_SERVICE_UNAVAILABLE = "ERR_1005"
    API_QUOTA_EXCEEDED = "ERR_1006"

    NETWORK_TIMEOUT = "ERR_2001"
    NETWORK_CONNECTION_REFUSED = "ERR_2002"
    NETWORK_DNS_FAILURE = "ERR_2003"

    VALIDATION_PROBLEM_STATEMENT = "ERR_3001"
    VALIDATION_TIER_INVALID = "ERR_3002"
    VALIDATION_SESSION_NOT_FOUND = "ERR_3003"
    VALIDATION_PAYMENT_NOT_CONFIRMED = "ERR_3004"

    PROCESSING_PART_FAILED = "ERR_4001"
    PROCESSING_TIMEOUT = "ERR_4002"
    PROCESSING_CONTENT_EMPTY = "ERR_4003"
    PROCESSING_PARSE_ERROR = "ERR_4004"

    SYSTEM_DATABASE_ERROR = "ERR_5001"
    SYSTEM_MEMORY_EXCEEDED = "ERR_5002"
    SYSTEM_INTERNAL_ERROR = "ERR_5003"

    RECOVERY_MAX_RETRIES = "ERR_6001"
    RECOVERY_CIRCUIT_OPEN = "ERR_6002"
    RECOVERY_PARTIAL_FAILURE = "ERR_6003"


class ErrorSeverity(str, Enum):
    """How loudly a failure should be surfaced."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    FATAL = "fatal"


class ErrorCategory(str, Enum):
    """Handling strategy for a classified failure."""

    RECOVERABLE = "recoverable"
    PARTIAL = "partial"
    FATAL = "fatal"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ErrorMetadata:
    """Static description of an error code plus the concrete technical message."""

    code: AnalysisErrorCode
    severity: ErrorSeverity
    category: ErrorCategory
    is_retryable: bool
    suggested_action: str
    user_message: str
    technical_message: str


# (severity, category, retryable, suggested action, user message)
_ERROR_DEFINITIONS: Dict[AnalysisErrorCode, Tuple[ErrorSeverity, ErrorCategory, bool, str, str]] = {
    AnalysisErrorCode.API_TIMEOUT: (
        ErrorSeverity.ERROR,
        ErrorCategory.TIMEOUT,
        True,
        "The request will be retried automatically",
        "The analysis service is responding slowly. Retrying...",
    ),
    AnalysisErrorCode.API_RATE_LIMIT: (
        ErrorSeverity.WARNING,
        ErrorCategory.RATE_LIMITED,
        True,
        "Request queued for retry after cooldown",
        "High demand detected. Your analysis has been queued.",
    ),
    AnalysisErrorCode.API_AUTHENTICATION: (
        ErrorSeverity.CRITICAL,
        ErrorCategory.FATAL,
        False,
        "Contact support immediately",
        "A configuration error occurred. Our team has been notified.",
    ),
    AnalysisErrorCode.API_INVALID_RESPONSE: (
        ErrorSeverity.ERROR,
        ErrorCategory.RECOVERABLE,
        True,
        "Retrying with different parameters",
        "Received unexpected data. Retrying...",
    ),
    AnalysisErrorCode.API_SERVICE_UNAVAILABLE: (
        ErrorSeverity.ERROR,
        ErrorCategory.RECOVERABLE,
        True,
        "Service will be retried after backoff",
        "Analysis service temporarily unavailable. Retrying...",
    ),
    AnalysisErrorCode.API_QUOTA_EXCEEDED: (
        ErrorSeverity.CRITICAL,
        ErrorCategory.FATAL,
        False,
        "Contact support for quota increase",
        "Service capacity reached. Please try again later.",
    ),
    AnalysisErrorCode.NETWORK_TIMEOUT: (
        ErrorSeverity.ERROR,
        ErrorCategory.TIMEOUT,
        True,
        "Retrying connection",
        "Connection timed out. Retrying...",
    ),
    AnalysisErrorCode.NETWORK_CONNECTION_REFUSED: (
        ErrorSeverity.ERROR,
        ErrorCategory.RECOVERABLE,
        True,
        "Retrying after delay",
        "Unable to connect. Retrying...",
    ),
    AnalysisErrorCode.NETWORK_DNS_FAILURE: (
        ErrorSeverity.CRITICAL,
        ErrorCategory.FATAL,
        False,
        "Check network configuration",
        "Network error occurred. Please try again later.",
    ),
    AnalysisErrorCode.VALIDATION_PROBLEM_STATEMENT: (
        ErrorSeverity.WARNING,
        ErrorCategory.FATAL,
        False,
        "Please provide a valid problem statement",
        "Your problem statement needs more detail. Please expand on your idea.",
    ),
    AnalysisErrorCode.VALIDATION_TIER_INVALID: (
        ErrorSeverity.ERROR,
        ErrorCategory.FATAL,
        False,
        "Select a valid tier",
        "Invalid tier selected. Please choose Observer, Insider, or Syndicate.",
    ),
    AnalysisErrorCode.VALIDATION_SESSION_NOT_FOUND: (
        ErrorSeverity.ERROR,
        ErrorCategory.FATAL,
        False,
        "Start a new analysis session",
        "Session not found. Please start a new analysis.",
    ),
    AnalysisErrorCode.VALIDATION_PAYMENT_NOT_CONFIRMED: (
        ErrorSeverity.WARNING,
        ErrorCategory.FATAL,
        False,
        "Complete payment to proceed",
        "Payment not confirmed. Please complete your purchase.",
    ),
    AnalysisErrorCode.PROCESSING_PART_FAILED: (
        ErrorSeverity.ERROR,
        ErrorCategory.PARTIAL,
        True,
        "Retrying failed part",
        "A section of your analysis encountered an issue. Retrying...",
    ),
    AnalysisErrorCode.PROCESSING_TIMEOUT: (
        ErrorSeverity.ERROR,
        ErrorCategory.TIMEOUT,
        True,
        "Retrying with extended timeout",
        "Analysis taking longer than expected. Extending time...",
    ),
    AnalysisErrorCode.PROCESSING_CONTENT_EMPTY: (
        ErrorSeverity.ERROR,
        ErrorCategory.RECOVERABLE,
        True,
        "Regenerating content",
        "Content generation incomplete. Regenerating...",
    ),
    AnalysisErrorCode.PROCESSING_PARSE_ERROR: (
        ErrorSeverity.ERROR,
        ErrorCategory.RECOVERABLE,
        True,
        "Retrying with alternative parsing",
        "Processing error. Retrying...",
    ),
    AnalysisErrorCode.SYSTEM_DATABASE_ERROR: (
        ErrorSeverity.CRITICAL,
        ErrorCategory.RECOVERABLE,
        True,
        "Retrying database operation",
        "Temporary storage issue. Retrying...",
    ),
    AnalysisErrorCode.SYSTEM_MEMORY_EXCEEDED: (
        ErrorSeverity.CRITICAL,
        ErrorCategory.FATAL,
        False,
        "Contact support",
        "System resource limit reached. Our team has been notified.",
    ),
    AnalysisErrorCode.SYSTEM_INTERNAL_ERROR: (
        ErrorSeverity.CRITICAL,
        ErrorCategory.FATAL,
        False,
        "Contact support",
        "An unexpected error occurred. Our team has been notified.",
    ),
    AnalysisErrorCode.RECOVERY_MAX_RETRIES: (
        ErrorSeverity.ERROR,
        ErrorCategory.FATAL,
        False,
        "Contact support for manual retry or refund",
        "Unable to complete analysis after multiple attempts. Please contact support.",
    ),
    AnalysisErrorCode.RECOVERY_CIRCUIT_OPEN: (
        ErrorSeverity.WARNING,
        ErrorCategory.RATE_LIMITED,
        False,
        "Wait for circuit to reset",
        "Service temporarily paused. Please try again in a few minutes.",
    ),
    AnalysisErrorCode.RECOVERY_PARTIAL_FAILURE: (
        ErrorSeverity.WARNING,
        ErrorCategory.PARTIAL,
        True,
        "Completing remaining parts",
        "Your analysis is partially complete. Finishing remaining sections...",
    ),
}


def get_error_metadata(code: AnalysisErrorCode, technical_message: str) -> ErrorMetadata:
    """Build metadata for ``code`` with the given technical message."""
    severity, category, retryable, action, user_message = _ERROR_DEFINITIONS[code]
    return ErrorMetadata(
        code=code,
        severity=severity,
        category=category,
        is_retryable=retryable,
        suggested_action=action,
        user_message=user_message,
        technical_message=technical_message,
    )


class AnalysisError(Exception):
    """Base class for all classified analysis failures.

    Attributes:
        code: Stable error code.
        severity: Severity level.
        category: Handling category (drives retry/partial/fatal branching).
        is_retryable: Whether an automatic retry may succeed.
        suggested_action: Operator-facing remediation hint.
        user_message: Safe message for end users.
        context: Free-form context (session_id, tier, part_number, ...).
        original_error: The exception this error was classified from, if any.
        timestamp: When the error was created (UTC).
    """

    def __init__(
        self,
        metadata: ErrorMetadata,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(metadata.technical_message)
        self.code = metadata.code
        self.severity = metadata.severity
        self.category = metadata.category
        self.is_retryable = metadata.is_retryable
        self.suggested_action = metadata.suggested_action
        self.user_message = metadata.user_message
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)
        self.context: Dict[str, Any] = {**(context or {}), "timestamp": self.timestamp.isoformat()}

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/storage."""
        return {
            "name": type(self).__name__,
            "code": self.code.value,
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "user_message": self.user_message,
            "suggested_action": self.suggested_action,
            "is_retryable": self.is_retryable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_error) if self.original_error else None,
        }

    def to_user_response(self) -> Dict[str, Any]:
        """Response shape safe to show to end users."""
        return {
            "error": True,
            "code": self.code.value,
            "message": self.user_message,
            "action": self.suggested_action,
            "can_retry": self.is_retryable,
        }


class ApiError(AnalysisError):
    """Failure reported by the LLM provider or another external API.

    Attributes:
        status_code: HTTP status code, if known.
        endpoint: Endpoint that failed, if known.
    """

    def __init__(
        self,
        code: AnalysisErrorCode,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(get_error_metadata(code, message), context, original_error)
        self.status_code = status_code
        self.endpoint = endpoint


class AnalysisTimeoutError(AnalysisError):
    """An orchestration step exceeded its time budget."""

    def __init__(
        self,
        operation: str,
        timeout_ms: int,
        context: Optional[Dict[str, Any]] = None,
    ):
        metadata = ErrorMetadata(
            code=AnalysisErrorCode.PROCESSING_TIMEOUT,
            severity=ErrorSeverity.ERROR,
            category=ErrorCategory.TIMEOUT,
            is_retryable=True,
            suggested_action="The operation will be retried automatically",
            user_message="The analysis is taking longer than expected. We're retrying...",
            technical_message=f'Operation "{operation}" timed out after {timeout_ms}ms',
        )
        super().__init__(metadata, context)
        self.operation = operation
        self.timeout_ms = timeout_ms


class PartialFailureError(AnalysisError):
    """Some parts completed before the run failed."""

    def __init__(
        self,
        completed_parts: List[int],
        failed_parts: List[int],
        partial_content: Dict[int, str],
        context: Optional[Dict[str, Any]] = None,
    ):
        total = len(completed_parts) + len(failed_parts)
        percentage = round(len(completed_parts) / total * 100) if total else 0
        metadata = ErrorMetadata(
            code=AnalysisErrorCode.RECOVERY_PARTIAL_FAILURE,
            severity=ErrorSeverity.WARNING,
            category=ErrorCategory.PARTIAL,
            is_retryable=True,
            suggested_action="Partial results have been saved. Missing parts will be retried.",
            user_message=(
                f"Your analysis is {percentage}% complete. We're working on the remaining sections."
            ),
            technical_message=(
                f"Partial failure: {len(completed_parts)} parts completed, {len(failed_parts)} parts failed"
            ),
        )
        super().__init__(metadata, context)
        self.completed_parts = completed_parts
        self.failed_parts = failed_parts
        self.partial_content = partial_content


class CircuitBreakerOpenError(AnalysisError):
    """The shared LLM circuit breaker is rejecting calls."""

    def __init__(
        self,
        reset_time: Optional[datetime],
        context: Optional[Dict[str, Any]] = None,
        breaker_name: str = "llm",
    ):
        until = reset_time.isoformat() if reset_time else "unknown"
        metadata = ErrorMetadata(
            code=AnalysisErrorCode.RECOVERY_CIRCUIT_OPEN,
            severity=ErrorSeverity.WARNING,
            category=ErrorCategory.RATE_LIMITED,
            is_retryable=False,
            suggested_action=f"Service will be available again at {until}",
            user_message="Our analysis service is temporarily unavailable. Please try again in a few minutes.",
            technical_message=f"Circuit breaker '{breaker_name}' is open until {until}",
        )
        super().__init__(metadata, context)
        self.reset_time = reset_time
        self.breaker_name = breaker_name


class MaxRetriesExceededError(AnalysisError):
    """Retries for a tier were exhausted."""

    def __init__(
        self,
        attempts_made: int,
        tier: str,
        max_retries: int,
        context: Optional[Dict[str, Any]] = None,
        last_error: Optional[BaseException] = None,
    ):
        metadata = ErrorMetadata(
            code=AnalysisErrorCode.RECOVERY_MAX_RETRIES,
            severity=ErrorSeverity.ERROR,
            category=ErrorCategory.FATAL,
            is_retryable=False,
            suggested_action="Please contact support for assistance or request a refund.",
            user_message=(
                "We were unable to complete your analysis after multiple attempts. Our team has been notified."
            ),
            technical_message=f"Max retries ({max_retries}) exceeded after {attempts_made} attempts",
        )
        super().__init__(metadata, {**(context or {}), "tier": tier}, last_error)
        self.attempts_made = attempts_made
        self.last_error = last_error


def _classify_http_status(
    status: int, message: str, context: Dict[str, Any], error: BaseException
) -> AnalysisError:
    if status == 429:
        return ApiError(AnalysisErrorCode.API_RATE_LIMIT, message, context, 429, original_error=error)
    if status in (401, 403):
        return ApiError(AnalysisErrorCode.API_AUTHENTICATION, message, context, status, original_error=error)
    if status == 402:
        return ApiError(AnalysisErrorCode.API_QUOTA_EXCEEDED, message, context, status, original_error=error)
    if status >= 500:
        return ApiError(AnalysisErrorCode.API_SERVICE_UNAVAILABLE, message, context, status, original_error=error)
    return ApiError(AnalysisErrorCode.API_INVALID_RESPONSE, message, context, status, original_error=error)


def classify_error(error: Any, **context: Any) -> AnalysisError:
    """Classify an arbitrary error into the analysis taxonomy.

    Already-classified errors are returned unchanged.  ``httpx`` exceptions
    are mapped by type first; other exceptions by message pattern.  Anything
    unrecognised becomes ``SYSTEM_INTERNAL_ERROR`` (fatal).

    Args:
        error: The exception (or any value) raised by the failed step.
        **context: Context merged into the resulting error (session_id, tier, ...).

    Returns:
        A structured AnalysisError.
    """
    if isinstance(error, AnalysisError):
        return error

    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__

        if isinstance(error, httpx.HTTPStatusError):
            return _classify_http_status(error.response.status_code, message, context, error)
        if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return ApiError(AnalysisErrorCode.API_TIMEOUT, message, context, original_error=error)
        if isinstance(error, (httpx.ConnectError, ConnectionRefusedError)):
            return ApiError(
                AnalysisErrorCode.NETWORK_CONNECTION_REFUSED, message, context, original_error=error
            )

        lowered = message.lower()
        if "timeout" in lowered or "timed out" in lowered or "etimedout" in lowered:
            return ApiError(AnalysisErrorCode.API_TIMEOUT, message, context, original_error=error)
        if "rate limit" in lowered or "429" in lowered or "too many requests" in lowered:
            return ApiError(AnalysisErrorCode.API_RATE_LIMIT, message, context, 429, original_error=error)
        if "401" in lowered or "unauthorized" in lowered or "authentication" in lowered:
            return ApiError(AnalysisErrorCode.API_AUTHENTICATION, message, context, 401, original_error=error)
        if "econnrefused" in lowered or "connection refused" in lowered:
            return ApiError(
                AnalysisErrorCode.NETWORK_CONNECTION_REFUSED, message, context, original_error=error
            )
        if "503" in lowered or "service unavailable" in lowered:
            return ApiError(
                AnalysisErrorCode.API_SERVICE_UNAVAILABLE, message, context, 503, original_error=error
            )

        return AnalysisError(
            get_error_metadata(AnalysisErrorCode.SYSTEM_INTERNAL_ERROR, message),
            context,
            error,
        )

    if isinstance(error, str):
        text = error
    else:
        try:
            text = json.dumps(error, default=str)
        except (TypeError, ValueError):
            text = repr(error)
    return AnalysisError(get_error_metadata(AnalysisErrorCode.SYSTEM_INTERNAL_ERROR, text), context)


def is_queueable(error: AnalysisError) -> bool:
    """Whether a classified error should go to the retry queue rather than fail.

    An open circuit is not retried inline but is always queued.
    """
    if error.code == AnalysisErrorCode.RECOVERY_CIRCUIT_OPEN:
        return True
    return error.is_retryable and error.category != ErrorCategory.FATAL
