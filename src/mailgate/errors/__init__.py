"""Centralized error definitions for mailgate.

Every failure that crosses a provider boundary is one of the classes below,
so callers only ever deal with a small, stable taxonomy.

Usage:
    from mailgate.errors import (
        MailgateError,
        NetworkError,
        is_retryable,
    )

    try:
        session = codec.decode(token)
    except MailgateError as e:
        print(e.user_message)
"""

from __future__ import annotations

from typing import Any

from mailgate.errors.user_messages import (
    format_error_for_cli,
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class MailgateError(Exception):
    """Base exception for all mailgate errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        retryable: Whether resubmitting the same request may succeed
        details: Additional error details for debugging
    """

    code: str = "MAILGATE_ERROR"
    default_message: str = "An unexpected error occurred"
    retryable: bool = False

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "details": self.details,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(MailgateError):
    """Required configuration is missing or invalid."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"


# =============================================================================
# Request Errors
# =============================================================================


class InvalidRequestError(MailgateError):
    """A provider call is missing required input."""

    code = "INVALID_REQUEST"
    default_message = "Invalid request"


# =============================================================================
# Session Token Errors
# =============================================================================


class TokenError(MailgateError):
    """Base error for access token handling."""

    code = "TOKEN_ERROR"
    default_message = "Access token could not be processed"


class InvalidTokenError(TokenError):
    """Token is malformed, tampered with, or cannot be decrypted."""

    code = "INVALID_TOKEN"
    default_message = "Invalid accessToken"


class TokenExpiredError(TokenError):
    """Token is older than the configured time-to-live."""

    code = "TOKEN_EXPIRED"
    default_message = "accessToken has expired"

    def __init__(self, ttl_hours: int, *, message: str | None = None) -> None:
        self.ttl_hours = ttl_hours
        super().__init__(
            message
            or f"accessToken has expired (valid for {ttl_hours} hours), please create a new mailbox",
            details={"ttl_hours": ttl_hours},
        )


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(MailgateError):
    """Base error for failures talking to a mail backend.

    Attributes:
        operation: Provider operation that triggered the failure
        reason: Short diagnostic cause, safe to show to callers
    """

    code = "PROVIDER_ERROR"
    default_message = "Mail provider operation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        operation: str | None = None,
        reason: str | None = None,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.operation = operation
        self.reason = reason
        merged: dict[str, Any] = {}
        if operation:
            merged["operation"] = operation
        if reason:
            merged["reason"] = reason
        merged.update(details or {})
        super().__init__(message, user_message=user_message, details=merged)


class NetworkError(ProviderError):
    """The mail server could not be reached or the connection broke."""

    code = "NETWORK_ERROR"
    default_message = "IMAP connection failed: unable to reach the server"
    retryable = True


class AuthenticationError(ProviderError):
    """The mail server rejected the supplied credentials."""

    code = "AUTHENTICATION_ERROR"
    default_message = "IMAP authentication failed: invalid username or password"


class ApiError(ProviderError):
    """The server answered, but the requested mailbox or message is absent."""

    code = "API_ERROR"
    default_message = "IMAP operation failed"


class UnknownError(ProviderError):
    """Anything the classifier could not place."""

    code = "UNKNOWN_ERROR"
    default_message = "Unexpected mail provider failure"


# =============================================================================
# Error Handler
# =============================================================================


def handle_error(error: Exception) -> str:
    """Handle an error and return a user-friendly message.

    Args:
        error: The exception to handle

    Returns:
        User-friendly error message with recovery suggestion
    """
    return format_error_for_user(error)


def is_retryable(error: Exception) -> bool:
    """Check if resubmitting the failed request may succeed.

    Args:
        error: The exception to check

    Returns:
        True if the error is retryable
    """
    if isinstance(error, MailgateError):
        return error.retryable
    return False


__all__ = [
    "ApiError",
    "AuthenticationError",
    "ConfigurationError",
    "InvalidRequestError",
    "InvalidTokenError",
    "MailgateError",
    "NetworkError",
    "ProviderError",
    "TokenError",
    "TokenExpiredError",
    "UnknownError",
    "format_error_for_cli",
    "format_error_for_user",
    "get_recovery_suggestion",
    "get_user_message",
    "handle_error",
    "is_retryable",
]
