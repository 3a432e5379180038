"""Error classification and sanitization utilities."""

from __future__ import annotations

import re

import httpx
from kubernetes.client.exceptions import ApiException

from ..services.sm.errors import ServiceManagerError

TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504, 404})
CONCURRENT_OPERATION_ERROR = "ConcurrentOperationInProgress"

# Patterns that might expose sensitive information
SENSITIVE_PATTERNS = [
    r"client[_\s]?id[:=\s]+([A-Za-z0-9\-_.!|]+)",
    r"client[_\s]?secret[:=\s]+([^\s,;\)]+)",
    r"access[_\s]?token[:=\s]+([^\s,;\)]+)",
    r"bearer\s+([A-Za-z0-9\-_.=]+)",
]

# Fields to redact completely
SENSITIVE_FIELDS = {
    "clientsecret",
    "client_secret",
    "password",
    "secret",
    "credentials",
    "token",
}


def get_status_code(error: Exception) -> int | None:
    """Return the effective HTTP status of a remote error.

    A proxied broker status takes precedence over the outer gateway status.
    """
    if isinstance(error, ServiceManagerError):
        return error.get_status_code()
    return None


def is_transient_error(error: Exception) -> bool:
    """Classify a Service Manager failure as transient or not.

    Rate limiting, gateway and availability faults and lost resources (404)
    are retried. A proxied broker error is classified by its own status code.
    Everything that is not a Service Manager error (validation, parsing,
    template rendering) is non-transient, except network failures.
    """
    if isinstance(error, httpx.TransportError):
        return True
    if not isinstance(error, ServiceManagerError):
        return False
    status_code = error.get_status_code()
    if status_code in TRANSIENT_STATUS_CODES:
        return True
    return status_code == 422 and error.error_type == CONCURRENT_OPERATION_ERROR


def is_transient_k8s_error(error: Exception) -> bool:
    """Conflicts, throttling and server errors from the cluster API are retried."""
    if not isinstance(error, ApiException):
        return False
    return error.status in (409, 429) or (error.status or 0) >= 500


def sanitize_error_message(message: str) -> str:
    """Sanitize error message to remove sensitive information.

    Args:
        message: Original error message

    Returns:
        Sanitized error message with sensitive data redacted
    """
    sanitized = message

    for pattern in SENSITIVE_PATTERNS:
        sanitized = re.sub(
            pattern,
            lambda m: m.group(0).replace(m.group(1), "[REDACTED]"),
            sanitized,
            flags=re.IGNORECASE,
        )

    for field in SENSITIVE_FIELDS:
        sanitized = re.sub(
            rf"\b{field}[\"']?[:=\s]+[\"']?([^\s,;\)\"']+)",
            f"{field}: [REDACTED]",
            sanitized,
            flags=re.IGNORECASE,
        )

    return sanitized


def sanitize_exception(error: Exception) -> str:
    """Sanitize exception message."""
    return sanitize_error_message(str(error))

