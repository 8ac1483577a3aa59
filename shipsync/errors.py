"""Error taxonomy for order sync, fulfillment write-back and rate quoting.

Every domain failure is a SyncError tagged with an ErrorClass:
- RETRYABLE: network, timeout, 429 and 5xx from a backend
- TERMINAL: validation failures, 4xx, business-rule rejections

classify_error() extends the same classification to foreign exceptions
(httpx, asyncio) so the retry engine never has to guess. Unknown errors
are terminal.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import httpx


class ErrorClass(str, Enum):
    """Whether a failure is worth another attempt."""

    RETRYABLE = "retryable"
    TERMINAL = "terminal"


# HTTP status codes that trigger a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class SyncError(Exception):
    """Base class for all domain failures."""

    error_class = ErrorClass.TERMINAL
    code = "sync_error"


class AuthenticationFailure(SyncError):
    code = "authentication_failure"


class InsufficientCredits(SyncError):
    code = "insufficient_credits"

    def __init__(self, balance: int, required: int):
        super().__init__(f"Insufficient carrier credits: balance={balance}, required={required}")
        self.balance = balance
        self.required = required


class MissingAddress(SyncError):
    code = "missing_address"


class InvalidPayload(SyncError):
    code = "invalid_payload"


class InvalidReference(SyncError):
    code = "invalid_reference"


class NoOpenFulfillment(SyncError):
    code = "no_open_fulfillment"


class FulfillmentRejected(SyncError):
    """Shopify returned userErrors for fulfillmentCreate."""

    code = "fulfillment_rejected"

    def __init__(self, user_errors: list[dict[str, Any]]):
        messages = ", ".join(str(e.get("message", "")) for e in user_errors) or "unknown error"
        super().__init__(f"Fulfillment creation failed: {messages}")
        self.user_errors = user_errors


class TransientBackendFailure(SyncError):
    error_class = ErrorClass.RETRYABLE
    code = "transient_backend_failure"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class BackendRequestRejected(SyncError):
    """A backend answered 4xx (other than 429) or a malformed body."""

    code = "backend_request_rejected"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RetryExhausted(SyncError):
    code = "retry_exhausted"

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error

    @property
    def retry_count(self) -> int:
        return self.attempts - 1


def classify_error(exc: BaseException) -> ErrorClass:
    """Map an exception to RETRYABLE or TERMINAL."""
    if isinstance(exc, SyncError):
        return exc.error_class
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in RETRYABLE_STATUS_CODES:
            return ErrorClass.RETRYABLE
        return ErrorClass.TERMINAL
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorClass.RETRYABLE
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return ErrorClass.RETRYABLE
    return ErrorClass.TERMINAL
