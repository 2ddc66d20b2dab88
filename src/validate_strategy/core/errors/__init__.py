"""Centralized error classes for validate-strategy.

Usage:
    from validate_strategy.core.errors import AnalysisError, classify_error
"""

from validate_strategy.core.errors.analysis import (
    AnalysisError,
    AnalysisErrorCode,
    AnalysisTimeoutError,
    ApiError,
    CircuitBreakerOpenError,
    ErrorCategory,
    ErrorMetadata,
    ErrorSeverity,
    MaxRetriesExceededError,
    PartialFailureError,
    classify_error,
    get_error_metadata,
    is_queueable,
)
from validate_strategy.core.errors.operations import (
    InvalidTransitionError,
    OperationNotFoundError,
    QueueItemExistsError,
)
from validate_strategy.core.errors.storage import (
    LockAcquisitionError,
    RecordCorruptedError,
)

__all__ = [
    # analysis
    "AnalysisError",
    "AnalysisErrorCode",
    "AnalysisTimeoutError",
    "ApiError",
    "CircuitBreakerOpenError",
    "ErrorCategory",
    "ErrorMetadata",
    "ErrorSeverity",
    "MaxRetriesExceededError",
    "PartialFailureError",
    "classify_error",
    "get_error_metadata",
    "is_queueable",
    # operations
    "InvalidTransitionError",
    "OperationNotFoundError",
    "QueueItemExistsError",
    # storage
    "LockAcquisitionError",
    "RecordCorruptedError",
]
