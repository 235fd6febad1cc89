"""
AssistQR Backend — Custom Exception Hierarchy
===============================================

What:  Defines application-specific exceptions for different error scenarios.
Why:   Custom exceptions enable targeted error handling with appropriate HTTP
       status codes and user-friendly messages, and let the offline sync
       engine tell terminal failures apart from retryable ones.
How:   Each exception class carries a message and optional context dict.
       Global exception handlers (registered in main.py) catch these and
       return structured JSON error responses with correct HTTP status codes.
Who:   Raised by services, the local queue and the sync client.

Exception Hierarchy:
    AssistQRError (base)
    ├── ValidationError          → 400 Bad Request (terminal, client can fix)
    │   └── InvalidImageError    → 400 Bad Request (non-image or empty photo)
    ├── NotFoundError            → 404 Not Found (unknown vehicle token)
    ├── StorageUnavailableError  → 503 Service Unavailable (retry later)
    ├── ProviderError            → never reaches HTTP; swallowed by the chain
    ├── TransientNetworkError    → raised client-side; retried by the sync engine
    └── RateLimitExceededError   → 429 Too Many Requests
"""

from typing import Any, Dict, Optional


class AssistQRError(Exception):
    """
    Base exception for all AssistQR application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged, returned only for 400s)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(AssistQRError):
    """
    Raised when client input fails validation.

    HTTP:    400 Bad Request

    `reason` is a stable machine-readable code (for example
    ``file_too_large``, ``too_many_files``, ``invalid_file_type``,
    ``out_of_range``, ``too_long``, ``missing_field``) so that callers can
    branch without parsing messages.
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        reason: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        if reason:
            ctx["reason"] = reason
        super().__init__(message=message, context=ctx)
        self.field = field
        self.reason = reason


class InvalidImageError(ValidationError):
    """Raised when an attached photo is not an image or carries no bytes."""

    def __init__(
        self,
        message: str = "Only image files are allowed",
        mime_type: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if mime_type is not None:
            ctx["mime_type"] = mime_type
        super().__init__(
            message=message,
            field="images",
            reason="invalid_file_type",
            context=ctx,
        )


class NotFoundError(AssistQRError):
    """
    Raised when a requested resource does not exist.

    When:    A report names a qrToken that matches no vehicle, or a queued
             report id is unknown to the local queue.
    HTTP:    404 Not Found
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        if message is None:
            message = f"The requested {resource} was not found"
            if resource_id:
                message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class StorageUnavailableError(AssistQRError):
    """
    Raised when persistent storage cannot be read or written.

    Covers the server database, the photo storage volume and the client-side
    local queue. Nothing is lost when this is raised: server writes are
    rolled back, queued reports remain pending.

    HTTP:    503 Service Unavailable
    """

    def __init__(
        self,
        message: str = "Storage is temporarily unavailable. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ProviderError(AssistQRError):
    """
    Raised by a single notification provider when it fails to deliver.

    Caught by the provider chain, which logs it and moves on to the next
    provider. Never propagated out of the notification fan-out.
    """

    def __init__(
        self,
        provider: str,
        message: str = "Notification provider failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["provider"] = provider
        super().__init__(message=message, context=ctx)
        self.provider = provider


class TransientNetworkError(AssistQRError):
    """
    Raised by the sync client when a submission fails in a retryable way:
    connection errors, timeouts, 5xx, 408 and 429 responses.
    """

    def __init__(
        self,
        message: str = "Network request failed",
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if status_code is not None:
            ctx["status_code"] = status_code
        super().__init__(message=message, context=ctx)
        self.status_code = status_code


class RateLimitExceededError(AssistQRError):
    """
    Raised when a client exceeds the per-IP request rate limit.

    HTTP:    429 Too Many Requests
    """

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
