"""Wire models shared by every mail provider.

All models serialize with camelCase aliases (``model_dump(by_alias=True)``)
so the JSON shape matches what API clients already consume, while Python code
uses snake_case attribute names.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


UNKNOWN_ADDRESS = "unknown@unknown.com"
NO_SUBJECT = "(no subject)"
DEFAULT_IMAP_PORT = 993
DEFAULT_FOLDER = "INBOX"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class WireModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MailboxCredentials(WireModel):
    """Real mailbox credentials captured inside a session token.

    Immutable once created; the pool keys live connections by
    ``host:port:username``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    domain: Optional[str] = Field(
        default=None, description="Domain used for generated addresses (optional with is_mine)"
    )
    host: str = Field(..., min_length=1, description="IMAP server hostname")
    port: int = Field(default=DEFAULT_IMAP_PORT, ge=1, le=65535, description="IMAP TLS port")
    username: str = Field(..., description="Login name (an e-mail address)")
    password: str = Field(..., min_length=1, repr=False, description="Password or app password")
    folder: str = Field(default=DEFAULT_FOLDER, min_length=1, description="Folder to read")

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:  # type: ignore[override]
        if not _EMAIL_RE.match(value):
            raise ValueError("username must be a valid e-mail address")
        return value

    @property
    def pool_key(self) -> str:
        return f"{self.host}:{self.port}:{self.username}"


class EmailContact(WireModel):
    """Single e-mail participant."""

    email: str = Field(default=UNKNOWN_ADDRESS, description="Mailbox address")
    name: Optional[str] = Field(default=None, description="Display name")


class EmailAttachment(WireModel):
    """Attachment metadata; the content itself is never downloaded."""

    id: str = Field(..., description="MIME part path of the attachment")
    filename: str = Field(..., description="Declared or generated filename")
    content_type: str = Field(..., description="Normalized MIME type")
    size: int = Field(default=0, ge=0, description="Encoded size in bytes")
    inline: bool = Field(default=False, description="True for inline disposition")
    content_id: Optional[str] = Field(default=None, description="Content-ID for inline images")


class MessageSummary(WireModel):
    """List entry for one message, without body content."""

    id: str = Field(..., description="Server-assigned UID")
    sender: EmailContact = Field(default_factory=EmailContact, alias="from")
    to: List[EmailContact] = Field(default_factory=list)
    cc: Optional[List[EmailContact]] = Field(default=None)
    subject: str = Field(default=NO_SUBJECT)
    received_at: datetime = Field(..., description="Server INTERNALDATE (UTC)")
    is_read: bool = Field(default=False)
    size: Optional[int] = Field(default=None, ge=0)
    provider: str = Field(..., description="Name of the provider that produced it")
    provider_message_id: Optional[str] = Field(
        default=None, description="Message-ID header from the envelope"
    )


class MessageContent(MessageSummary):
    """Full message: summary plus bodies and attachment metadata."""

    text_content: Optional[str] = Field(default=None)
    html_content: Optional[str] = Field(default=None)
    attachments: Optional[List[EmailAttachment]] = Field(default=None)


class CreateEmailRequest(WireModel):
    """Request for a new disposable address."""

    provider: Optional[str] = Field(default=None)
    imap: Optional[MailboxCredentials] = Field(
        default=None, description="Mailbox credentials (required by the IMAP provider)"
    )
    prefix: Optional[str] = Field(default=None, description="Local part to use instead of a generated one")
    is_mine: bool = Field(
        default=False, description="Use the real mailbox address instead of a generated one"
    )


class CreateEmailResponse(WireModel):
    """Result of ``create_email``."""

    address: str
    domain: str
    username: str
    provider: str
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class ProviderErrorInfo(WireModel):
    """Error part of the response envelope."""

    type: str
    message: str
    provider: str
    retryable: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    context: Dict[str, Any] = Field(default_factory=dict)


class ResponseMetadata(WireModel):
    provider: str
    response_time_ms: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    operation: Optional[str] = None
    total: Optional[int] = None


class ProviderResponse(WireModel):
    """Uniform success/error envelope returned by every provider operation."""

    success: bool
    data: Optional[Any] = None
    error: Optional[ProviderErrorInfo] = None
    metadata: ResponseMetadata


class ProviderStatus(str, Enum):
    ACTIVE = "active"
    DEGRADED = "degraded"
    ERROR = "error"


class ProviderHealth(WireModel):
    status: ProviderStatus
    last_checked: datetime
    error_count: int
    success_rate: float
    uptime_seconds: float
    response_time_ms: float
    pool_size: Optional[int] = None


__all__ = [
    "CreateEmailRequest",
    "CreateEmailResponse",
    "EmailAttachment",
    "EmailContact",
    "MailboxCredentials",
    "MessageContent",
    "MessageSummary",
    "NO_SUBJECT",
    "ProviderErrorInfo",
    "ProviderHealth",
    "ProviderResponse",
    "ProviderStatus",
    "ResponseMetadata",
    "UNKNOWN_ADDRESS",
    "WireModel",
]
