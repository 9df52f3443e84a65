"""
Error taxonomy for the relay.

Caller errors (ValidationError, InvalidPhoneNumber) are raised before any
record exists and surface synchronously with a structured reason.
Gateway failures are classified so the Retry Scheduler can decide whether
another attempt makes sense:

- RATE_LIMIT: 429 or gateway rate-limit codes
- TIMEOUT: request timed out
- CONNECTION: network failure before a response arrived
- QUEUE_FULL: gateway queue overflow
- SERVER_ERROR: any 5xx answer
- INVALID_RECIPIENT / INVALID_TEMPLATE / AUTHENTICATION / BAD_REQUEST: permanent
"""

from enum import Enum
from typing import Any, Optional

import httpx


class RelayError(Exception):
    """Base class for errors with a stable code and HTTP status."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(RelayError):
    """Malformed or missing request fields."""

    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidPhoneNumber(ValidationError):
    """Phone input that cannot be turned into a gateway address."""

    code = "INVALID_PHONE_NUMBER"


class MessageNotFound(RelayError):
    code = "MESSAGE_NOT_FOUND"
    http_status = 404


class RetryNotAllowed(RelayError):
    code = "RETRY_NOT_ALLOWED"
    http_status = 409


class SubmissionFailed(RelayError):
    """Submission failure that did not come from the gateway client itself."""

    code = "SUBMISSION_FAILED"
    http_status = 502


class GatewayErrorClass(str, Enum):
    """Normalized gateway error classifications."""

    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    CONNECTION = "CONNECTION"
    QUEUE_FULL = "QUEUE_FULL"
    SERVER_ERROR = "SERVER_ERROR"
    INVALID_RECIPIENT = "INVALID_RECIPIENT"
    INVALID_TEMPLATE = "INVALID_TEMPLATE"
    AUTHENTICATION = "AUTHENTICATION"
    BAD_REQUEST = "BAD_REQUEST"


RETRYABLE_ERROR_CLASSES = frozenset({
    GatewayErrorClass.RATE_LIMIT,
    GatewayErrorClass.TIMEOUT,
    GatewayErrorClass.CONNECTION,
    GatewayErrorClass.QUEUE_FULL,
    GatewayErrorClass.SERVER_ERROR,
})

# Gateway error codes with a known meaning
RATE_LIMIT_CODES = frozenset({"20429", "14107", "63018"})
QUEUE_FULL_CODES = frozenset({"30001"})
INVALID_RECIPIENT_CODES = frozenset({"21211", "21214", "21408", "21610", "21614", "63003", "63024"})
INVALID_TEMPLATE_CODES = frozenset({"21656", "63016", "63027", "63028"})


class GatewayError(RelayError):
    """
    Failure reported by (or while talking to) the messaging gateway.

    Attributes:
        error_class: Normalized classification used for retry decisions
        status_code: HTTP status of the gateway answer, if one arrived
        gateway_code: Gateway-specific error code, if present
    """

    code = "GATEWAY_ERROR"
    http_status = 502

    def __init__(
        self,
        error_class: GatewayErrorClass,
        message: str,
        status_code: Optional[int] = None,
        gateway_code: Optional[str] = None,
    ):
        self.error_class = error_class
        self.status_code = status_code
        self.gateway_code = gateway_code
        super().__init__(message)

    @property
    def error_code(self) -> str:
        """Code recorded on the message when this failure is terminal."""
        return self.gateway_code or self.error_class.value


def classify_gateway_error(
    status_code: Optional[int],
    json_body: Optional[dict],
    exception: Optional[Exception] = None,
) -> GatewayErrorClass:
    """
    Classify a gateway failure into a normalized error class.

    Args:
        status_code: HTTP status code (if a response arrived)
        json_body: Parsed JSON error body (if available)
        exception: Transport exception (if one was raised)

    Returns:
        The GatewayErrorClass for this failure.
    """
    if exception is not None:
        if isinstance(exception, httpx.TimeoutException):
            return GatewayErrorClass.TIMEOUT
        if isinstance(exception, httpx.TransportError):
            return GatewayErrorClass.CONNECTION

    if status_code is None:
        return GatewayErrorClass.CONNECTION

    gateway_code = str((json_body or {}).get("code", ""))
    message = str((json_body or {}).get("message", "")).lower()

    if status_code == 429 or gateway_code in RATE_LIMIT_CODES:
        return GatewayErrorClass.RATE_LIMIT
    if gateway_code in QUEUE_FULL_CODES or "queue overflow" in message:
        return GatewayErrorClass.QUEUE_FULL
    if status_code >= 500:
        return GatewayErrorClass.SERVER_ERROR
    if status_code in (401, 403):
        return GatewayErrorClass.AUTHENTICATION
    if gateway_code in INVALID_RECIPIENT_CODES:
        return GatewayErrorClass.INVALID_RECIPIENT
    if gateway_code in INVALID_TEMPLATE_CODES:
        return GatewayErrorClass.INVALID_TEMPLATE

    return GatewayErrorClass.BAD_REQUEST


def is_retryable(error: Exception) -> bool:
    """Return True if another submission attempt may succeed."""
    if isinstance(error, GatewayError):
        return error.error_class in RETRYABLE_ERROR_CLASSES
    if isinstance(error, httpx.TransportError):
        return True
    return False
