"""Map low-level IMAP and transport failures onto the mailgate taxonomy.

Raw server text is never surfaced to callers: the classified error carries a
fixed human-readable message plus the operation name and a short reason, and
the original exception stays reachable through ``__cause__`` for logs.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import ssl

from imapclient.exceptions import IMAPClientAbortError, LoginError

from mailgate.errors import (
    ApiError,
    AuthenticationError,
    MailgateError,
    NetworkError,
    UnknownError,
)

logger = logging.getLogger(__name__)


NETWORK_MARKERS = (
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ECONNRESET",
    "ENOTFOUND",
    "CONNECTION REFUSED",
    "CONNECTION RESET",
    "TIMED OUT",
    "SOCKET ERROR",
)
AUTH_MARKERS = ("AUTHENTICATIONFAILED", "INVALID CREDENTIALS", "LOGIN FAILED")
MAILBOX_MARKERS = ("MAILBOX DOES NOT EXIST", "NONEXISTENT", "UNKNOWN MAILBOX", "SELECT FAILED")

# errors that poison a pooled connection
CONNECTION_ERROR_TYPES = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    socket.timeout,
    socket.gaierror,
    ssl.SSLError,
    IMAPClientAbortError,
)


def _message(exc: BaseException) -> str:
    return str(exc).upper()


def is_connection_error(exc: BaseException) -> bool:
    """True when ``exc`` means the underlying connection can't be reused."""
    if isinstance(exc, NetworkError):
        return True
    if isinstance(exc, MailgateError):
        return False
    if isinstance(exc, CONNECTION_ERROR_TYPES):
        return True
    if isinstance(exc, OSError) and not isinstance(exc, FileNotFoundError):
        return True
    message = _message(exc)
    return "CONNECTION" in message or any(marker in message for marker in NETWORK_MARKERS)


def classify_error(exc: BaseException, operation: str) -> MailgateError:
    """Translate ``exc`` into a classified error for ``operation``.

    Errors that are already part of the taxonomy pass through unchanged.
    """
    if isinstance(exc, MailgateError):
        return exc

    message = _message(exc)

    if isinstance(exc, LoginError) or any(marker in message for marker in AUTH_MARKERS):
        classified: MailgateError = AuthenticationError(
            operation=operation, reason="credentials rejected by server"
        )
    elif is_connection_error(exc):
        classified = NetworkError(
            operation=operation, reason="network unreachable or wrong server address"
        )
    elif any(marker in message for marker in MAILBOX_MARKERS):
        classified = ApiError(
            "IMAP operation failed: mailbox folder does not exist",
            operation=operation,
            reason="mailbox folder not found",
        )
    else:
        classified = UnknownError(operation=operation, reason=type(exc).__name__)

    classified.__cause__ = exc
    logger.debug(
        "Classified IMAP failure",
        extra={"operation": operation, "error_code": classified.code, "error_type": type(exc).__name__},
    )
    return classified


__all__ = ["classify_error", "is_connection_error"]
