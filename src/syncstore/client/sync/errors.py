"""Classification of transport and service errors.

This module provides:
- classify_error: Map any raised error to an ErrorType
- extract_status_code / extract_error_details: Pull the fields the
  classifier looks at out of the many shapes errors arrive in

Errors come from httpx (transport failures, HTTP status errors), from
GraphQLClient (APIError family, GraphQL "errors" lists), from websocket
error frames (plain dicts) or are already classified (SyncError,
ErrorRecord). Checks run in a fixed order and the first match wins:

    Unauthorized > Network > Conflict > BadRecord > Transient > Fatal
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import httpx

from syncstore.client.api import (
    APIError,
    AuthenticationError,
    CredentialsError,
    GraphQLResponseError,
)
from syncstore.client.sync.types import ErrorRecord, NonRetryableError, SyncError
from syncstore.core.types import ErrorType

_BAD_RECORD_PATTERNS = (
    re.compile(r"^Variable '.+' has coerced Null value for NonNull type"),
    re.compile(r"^Cannot return \w+ for [\w\-_]+ type"),
)
_UNAUTHORIZED_STATUS = re.compile(r"status code 401")
_SERVER_ERROR_STATUS = re.compile(r"status code 5\d\d")
_TIMEOUT_PATTERN = re.compile(r"timeout of \d+ms exceeded|timed out", re.IGNORECASE)

CONNECTION_TIMEOUT_MESSAGE = "Connection failed: Connection Timeout"
NETWORK_ERROR_MESSAGE = "Network Error"
CONFLICT_ERROR_TYPE = "ConflictUnhandled"


@dataclass
class ErrorDetails:
    """The fields classification looks at."""

    message: str
    status_code: int | None = None
    error_type: str | None = None
    code: str | None = None


def extract_status_code(error: Any) -> int | None:
    """Get an HTTP status code from an error, if it carries one."""
    if isinstance(error, dict):
        status = error.get("statusCode", error.get("status_code"))
        return status if isinstance(status, int) else None
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def extract_error_details(error: Any) -> ErrorDetails:
    """Normalize an error into message, status, errorType and code."""
    if isinstance(error, GraphQLResponseError):
        first = error.first_error
        return ErrorDetails(
            message=str(first.get("message", "")) or str(error),
            status_code=error.status_code,
            error_type=first.get("errorType"),
        )
    if isinstance(error, dict):
        # Websocket error frames wrap the error objects in "errors"
        errors = error.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            error = {**error, **errors[0]}
        return ErrorDetails(
            message=str(error.get("message", "")),
            status_code=extract_status_code(error),
            error_type=error.get("errorType"),
            code=error.get("code"),
        )
    if isinstance(error, str):
        return ErrorDetails(message=error)
    code = getattr(error, "code", None)
    return ErrorDetails(
        message=str(error),
        status_code=extract_status_code(error),
        code=code if isinstance(code, str) else None,
    )


def _is_unauthorized(error: Any, details: ErrorDetails) -> bool:
    if isinstance(error, (AuthenticationError, CredentialsError)):
        return True
    return (
        details.status_code == 401
        or details.error_type == "Unauthorized"
        or details.message == "Unauthorized"
        or bool(_UNAUTHORIZED_STATUS.search(details.message))
    )


def _is_network(error: Any, details: ErrorDetails) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, OSError) and not isinstance(error, APIError):
        # ConnectionError and TimeoutError are OSError subclasses
        return True
    return (
        NETWORK_ERROR_MESSAGE in details.message
        or details.code == "ECONNABORTED"
    )


def _is_conflict(details: ErrorDetails) -> bool:
    return details.error_type == CONFLICT_ERROR_TYPE or details.status_code == 409


def _is_bad_record(details: ErrorDetails) -> bool:
    return any(p.search(details.message) for p in _BAD_RECORD_PATTERNS)


def _is_transient(details: ErrorDetails) -> bool:
    if CONNECTION_TIMEOUT_MESSAGE in details.message:
        return True
    if _TIMEOUT_PATTERN.search(details.message):
        return True
    if details.status_code is not None and 500 <= details.status_code < 600:
        return True
    return bool(_SERVER_ERROR_STATUS.search(details.message))


def classify_error(error: Any) -> ErrorType:
    """Map a raw error to its semantic category.

    Args:
        error: Exception, GraphQL error dict, message string,
            ErrorRecord or an already classified SyncError.

    Returns:
        The ErrorType driving retry and reporting decisions.
    """
    if isinstance(error, ErrorRecord):
        return error.error_type
    if isinstance(error, SyncError):
        # Wrappers without a category of their own defer to the cause
        if type(error) in (SyncError, NonRetryableError) and error.cause is not None:
            return classify_error(error.cause)
        return error.error_type

    details = extract_error_details(error)

    if _is_unauthorized(error, details):
        return ErrorType.UNAUTHORIZED
    if _is_network(error, details):
        return ErrorType.NETWORK
    if _is_conflict(details):
        return ErrorType.CONFLICT
    if _is_bad_record(details):
        return ErrorType.BAD_RECORD
    if _is_transient(details):
        return ErrorType.TRANSIENT
    return ErrorType.FATAL


def is_network_error(error: Any) -> bool:
    """Check if an error means connectivity was lost."""
    if error is None:
        return False
    return classify_error(error) is ErrorType.NETWORK
