"""JSON response envelope for CLI commands.

Every command prints exactly one object::

    {"success": bool, "data": {...}, "error": str | null, "meta": {"version": "response-v2"}}

``emit_error`` exits with status 1 after printing.
"""

import json
import sys
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, NoReturn, Optional, Union

import click

RESPONSE_VERSION = "response-v2"


class ErrorCode(str, Enum):
    """Machine-readable error codes for CLI failures."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorType(str, Enum):
    """Error categories for client-side handling."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


@dataclass
class CommandResponse:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=lambda: {"version": RESPONSE_VERSION})


def success_response(data: Optional[Mapping[str, Any]] = None, **fields: Any) -> CommandResponse:
    payload: Dict[str, Any] = dict(data or {})
    payload.update(fields)
    return CommandResponse(success=True, data=payload)


def error_response(
    message: str,
    *,
    error_code: Optional[Union[ErrorCode, str]] = None,
    error_type: Optional[Union[ErrorType, str]] = None,
    remediation: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
) -> CommandResponse:
    payload: Dict[str, Any] = {}
    if error_code is not None:
        payload["error_code"] = error_code.value if isinstance(error_code, Enum) else error_code
    if error_type is not None:
        payload["error_type"] = error_type.value if isinstance(error_type, Enum) else error_type
    if remediation is not None:
        payload["remediation"] = remediation
    if details:
        payload["details"] = dict(details)
    return CommandResponse(success=False, data=payload, error=message)


def _print(response: CommandResponse) -> None:
    click.echo(json.dumps(asdict(response), indent=2, default=str))


def emit_success(data: Optional[Mapping[str, Any]] = None, **fields: Any) -> None:
    """Print a success envelope."""
    _print(success_response(data, **fields))


def emit_error(
    message: str,
    *,
    code: Union[ErrorCode, str] = ErrorCode.INTERNAL_ERROR,
    error_type: Union[ErrorType, str] = ErrorType.INTERNAL,
    remediation: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
) -> NoReturn:
    """Print an error envelope and exit with status 1."""
    _print(
        error_response(
            message, error_code=code, error_type=error_type, remediation=remediation, details=details
        )
    )
    sys.exit(1)
