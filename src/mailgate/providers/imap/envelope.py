"""Helpers turning imapclient ENVELOPE data into wire models."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.header import decode_header
from typing import Any, Iterable, List, Mapping, Optional, Set

from imapclient import SEEN
from imapclient.response_types import Address, Envelope

from mailgate.providers.models import (
    NO_SUBJECT,
    UNKNOWN_ADDRESS,
    EmailContact,
    MessageSummary,
)

logger = logging.getLogger(__name__)

SUMMARY_FETCH_ITEMS = ("ENVELOPE", "BODYSTRUCTURE", "INTERNALDATE", "FLAGS", "RFC822.SIZE")


def _to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def decode_mime_words(value: Any) -> str:
    """Decode RFC 2047 encoded words (``=?utf-8?B?...?=``) into text."""
    text = _to_str(value)
    if "=?" not in text:
        return text

    result = ""
    for part, charset in decode_header(text):
        if isinstance(part, bytes):
            try:
                result += part.decode(charset or "utf-8", errors="replace")
            except LookupError:
                result += part.decode("utf-8", errors="replace")
        else:
            result += part
    return result


def decode_subject(envelope: Optional[Envelope]) -> str:
    if envelope is None or not envelope.subject:
        return NO_SUBJECT
    subject = decode_mime_words(envelope.subject).strip()
    return subject or NO_SUBJECT


def address_email(address: Address) -> Optional[str]:
    """``mailbox@host`` for a real address; None for group markers."""
    if not address.mailbox or not address.host:
        return None
    return f"{_to_str(address.mailbox)}@{_to_str(address.host)}"


def to_contact(address: Optional[Address]) -> EmailContact:
    if address is None:
        return EmailContact(email=UNKNOWN_ADDRESS)
    name = decode_mime_words(address.name).strip() if address.name else None
    return EmailContact(email=address_email(address) or UNKNOWN_ADDRESS, name=name or None)


def to_contacts(addresses: Optional[Iterable[Address]]) -> List[EmailContact]:
    return [to_contact(address) for address in addresses or () if address_email(address)]


def recipient_set(envelope: Optional[Envelope]) -> Set[str]:
    """Lower-cased To, Cc and Bcc addresses of ``envelope``."""
    if envelope is None:
        return set()
    recipients: Set[str] = set()
    for field in (envelope.to, envelope.cc, envelope.bcc):
        for address in field or ():
            email = address_email(address)
            if email:
                recipients.add(email.lower())
    return recipients


def to_utc(value: Optional[datetime]) -> datetime:
    """Normalize INTERNALDATE to an aware UTC datetime.

    imapclient returns naive datetimes in local time unless
    ``normalise_times`` is disabled.
    """
    if value is None:
        return datetime.now(timezone.utc)
    return value.astimezone(timezone.utc)


def is_seen(flags: Optional[Iterable[Any]]) -> bool:
    return any(flag == SEEN or _to_str(flag) == r"\Seen" for flag in flags or ())


def build_summary(
    uid: int, data: Mapping[bytes, Any], provider: str, cls: type = MessageSummary, **extra: Any
) -> MessageSummary:
    """Build a summary (or ``cls``) from one FETCH response entry."""
    envelope: Optional[Envelope] = data.get(b"ENVELOPE")
    senders = envelope.from_ if envelope is not None else None
    cc = to_contacts(envelope.cc) if envelope is not None and envelope.cc else None
    message_id = _to_str(envelope.message_id).strip("<>").strip() if envelope is not None else ""

    return cls(
        id=str(uid),
        sender=to_contact(senders[0] if senders else None),
        to=to_contacts(envelope.to) if envelope is not None else [],
        cc=cc,
        subject=decode_subject(envelope),
        received_at=to_utc(data.get(b"INTERNALDATE")),
        is_read=is_seen(data.get(b"FLAGS")),
        size=data.get(b"RFC822.SIZE"),
        provider=provider,
        provider_message_id=message_id or None,
        **extra,
    )


__all__ = [
    "SUMMARY_FETCH_ITEMS",
    "build_summary",
    "decode_mime_words",
    "decode_subject",
    "recipient_set",
    "to_contact",
    "to_contacts",
    "to_utc",
]
