"""
MistakeBook Backend — Custom Exception Hierarchy
=================================================

What:  Application-specific exceptions for input, provider and storage failures.
How:   Each exception class carries a message and optional context dict.
       Global exception handlers (registered in main.py) catch these and
       return structured JSON error responses with correct HTTP status codes.
Who:   Raised by services; caught by the orchestrator, the batch queue
       and the global handlers.

Exception Hierarchy:
    MistakeBookError (base)
    ├── ValidationError            → 400 (bad format / size, never retried)
    ├── UnauthorizedError          → 401
    ├── ProviderError              → 503 (fallback / retry eligible)
    │   ├── ProviderTimeoutError       kind=timeout
    │   ├── ProviderHTTPError          kind=http_error
    │   ├── ProviderParseError         kind=parse_error
    │   ├── EmptyResultError           kind=empty_result   (→ 422)
    │   ├── ProviderAuthError          kind=auth_error
    │   └── CircuitBreakerOpenError    kind=circuit_open
    ├── ExhaustedRetriesError      (recorded on a queue item, never raised
    │                               out of a batch)
    └── DatabaseError              → 500

Recovery:
    The provider subkind is kept for diagnostics only. The orchestrator and
    the batch queue treat every ProviderError the same way.
"""

from typing import Any, Dict, Optional


class MistakeBookError(Exception):
    """
    Base exception for all MistakeBook application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned verbatim)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(MistakeBookError):
    """
    Raised when an image fails local validation.

    When:    Unsupported MIME type, empty payload, size over the limit,
             undecodable base64, too many files in one batch.
    HTTP:    400 Bad Request

    `reason` is a machine-readable code; the batch queue copies `message`
    onto the failed item as-is.
    """

    UNSUPPORTED_FORMAT = "unsupported_format"
    FILE_TOO_LARGE = "file_too_large"
    EMPTY_IMAGE = "empty_image"
    INVALID_ENCODING = "invalid_encoding"
    TOO_MANY_FILES = "too_many_files"

    def __init__(
        self,
        message: str = "Validation failed",
        reason: Optional[str] = None,
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        if reason:
            ctx["reason"] = reason
        super().__init__(message=message, context=ctx)
        self.reason = reason
        self.field = field


class UnauthorizedError(MistakeBookError):
    """Raised when a request carries no user credential. HTTP 401."""

    def __init__(
        self,
        message: str = "Authentication required",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ProviderError(MistakeBookError):
    """
    Raised when a recognition backend cannot produce usable results.

    Attributes:
        provider: Name of the backend that failed ("alibaba", "baidu", "gemini")
        kind:     Failure subkind, one of the KIND_* constants of the subclasses
    """

    kind = "provider_error"

    def __init__(
        self,
        message: str = "Recognition failed, please retry",
        provider: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["kind"] = self.kind
        if provider:
            ctx["provider"] = provider
        super().__init__(message=message, context=ctx)
        self.provider = provider


class ProviderTimeoutError(ProviderError):
    """The backend did not answer within `settings.provider_timeout`."""

    kind = "timeout"


class ProviderHTTPError(ProviderError):
    """The backend answered with a non-success status or an error envelope."""

    kind = "http_error"

    def __init__(
        self,
        message: str = "Recognition service returned an error",
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if status_code is not None:
            ctx["status_code"] = status_code
        super().__init__(message=message, provider=provider, context=ctx)
        self.status_code = status_code


class ProviderParseError(ProviderError):
    """No JSON array of questions could be recovered from the response."""

    kind = "parse_error"


class EmptyResultError(ProviderError):
    """The backend answered correctly but recognized no question."""

    kind = "empty_result"

    def __init__(
        self,
        message: str = "No question content recognized. Make sure the photo is clear.",
        provider: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, provider=provider, context=context)


class ProviderAuthError(ProviderError):
    """Credentials are missing, rejected, or the token exchange failed."""

    kind = "auth_error"


class CircuitBreakerOpenError(ProviderError):
    """
    Raised when a provider's circuit breaker is OPEN.

    How circuit breaker works:
        CLOSED (normal) → failures increment counter
        → After N failures → OPEN (reject all calls for recovery_time seconds)
        → After recovery_time → HALF-OPEN (allow one test call)
        → Test succeeds → CLOSED; test fails → OPEN again

    Being a ProviderError, an open circuit simply moves the orchestrator
    on to the next provider in the chain.
    """

    kind = "circuit_open"

    def __init__(
        self,
        recovery_time: int = 60,
        provider: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        service = f"Recognition service '{provider}'" if provider else "Recognition service"
        message = (
            f"{service} is temporarily unavailable due to repeated failures. "
            f"Retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, provider=provider, context=ctx)
        self.recovery_time = recovery_time


class ExhaustedRetriesError(MistakeBookError):
    """
    Terminal per-item failure after the batch queue used up its retries.

    Never raised to the batch caller: the queue stores it on the item and
    reports it through the event sink.
    """

    def __init__(
        self,
        message: str = "Recognition failed, please retry",
        attempts: int = 0,
        last_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["attempts"] = attempts
        if last_error is not None:
            ctx["last_error"] = type(last_error).__name__
        super().__init__(message=message, context=ctx)
        self.attempts = attempts
        self.last_error = last_error


class DatabaseError(MistakeBookError):
    """
    Raised when persisting recognized questions fails.

    The message returned to the client is always generic; the SQL error is
    logged server-side only.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
