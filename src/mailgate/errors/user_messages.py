"""User-friendly error messages for mailgate.

This module provides human-readable error messages and recovery suggestions
for all error types, so callers never see raw server responses.

Privacy Note:
- Error messages NEVER include credentials or tokens
- Raw IMAP server text is kept out of messages
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Configuration errors
    "CONFIGURATION_ERROR": "The service is misconfigured.",
    # Request errors
    "INVALID_REQUEST": "The request is missing required information.",
    # Token errors
    "TOKEN_ERROR": "The access token could not be processed.",
    "INVALID_TOKEN": "The access token is invalid.",
    "TOKEN_EXPIRED": "The access token has expired.",
    # Provider errors
    "PROVIDER_ERROR": "The mail provider reported a problem.",
    "NETWORK_ERROR": "Could not reach the mail server.",
    "AUTHENTICATION_ERROR": "The mail server rejected the credentials.",
    "API_ERROR": "The requested mailbox or message was not found.",
    # Generic
    "MAILGATE_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    # Configuration errors
    "CONFIGURATION_ERROR": "Set IMAP_ENCRYPTION_KEY when IMAP_ENCRYPT_TOKEN is enabled.",
    # Request errors
    "INVALID_REQUEST": "Provide the IMAP credentials and a domain, then retry.",
    # Token errors
    "TOKEN_ERROR": "Resubmit the token exactly as it was issued.",
    "INVALID_TOKEN": "Resubmit the token exactly as it was issued, or create a new mailbox.",
    "TOKEN_EXPIRED": "Create a new mailbox to obtain a fresh token.",
    # Provider errors
    "PROVIDER_ERROR": "Retry the request. If it keeps failing, check the mailbox settings.",
    "NETWORK_ERROR": "Check the IMAP host and port, then retry.",
    "AUTHENTICATION_ERROR": "Verify the username and app password for the mailbox.",
    "API_ERROR": "Check the folder name and message id.",
    # Generic
    "MAILGATE_ERROR": "If this persists, please report the issue.",
    "UNKNOWN_ERROR": "Retry the request. Report the issue if it continues.",
}


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get user-friendly message for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        User-friendly error message
    """
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        Recovery suggestion
    """
    return RECOVERY_SUGGESTIONS.get(_error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"])


def format_error_for_user(error: Any) -> str:
    """Format a complete user-friendly error message.

    Args:
        error: The error to format

    Returns:
        Complete error message with recovery suggestion
    """
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)

    return f"{message}\n\nSuggestion: {suggestion}"


def format_error_for_cli(error: Any) -> str:
    """Format error for CLI output.

    Args:
        error: The error to format

    Returns:
        CLI-formatted error message
    """
    message = getattr(error, "message", None) or get_user_message(error)
    suggestion = get_recovery_suggestion(error)
    code = getattr(error, "code", "ERROR")

    lines = [
        f"Error [{code}]: {message}",
        "",
        f"Suggestion: {suggestion}",
    ]

    details = getattr(error, "details", None)
    if details:
        lines.append("")
        lines.append("Details:")
        for key, value in details.items():
            # Don't expose sensitive details
            if key not in ("password", "token", "access_token"):
                lines.append(f"  {key}: {value}")

    return "\n".join(lines)


__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_SUGGESTIONS",
    "format_error_for_cli",
    "format_error_for_user",
    "get_recovery_suggestion",
    "get_user_message",
]
