"""Shared fixtures and mock IMAP infrastructure."""

from __future__ import annotations

import ssl
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import pytest
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError
from imapclient.response_types import Address, BodyData, Envelope

import mailgate.providers.imap.connection_manager as cm
from mailgate.configuration.settings import ImapProviderSettings
from mailgate.providers.models import MailboxCredentials

MAILBOX_PASSWORD = "app-password"


# ============================================================================
# BODYSTRUCTURE builders
# ============================================================================


def text_part(
    subtype: bytes = b"plain",
    *,
    charset: bytes = b"utf-8",
    encoding: bytes = b"7bit",
    size: int = 64,
    disposition: Optional[Tuple[Any, ...]] = None,
) -> BodyData:
    return BodyData(
        (b"text", subtype, (b"charset", charset), None, None, encoding, size, 3, None, disposition, None, None)
    )


def file_part(
    main_type: bytes,
    subtype: bytes,
    filename: Optional[bytes],
    *,
    size: int = 2048,
    disposition: Optional[bytes] = b"attachment",
    content_id: Optional[bytes] = None,
) -> BodyData:
    params = (b"name", filename) if filename else None
    disposition_field = (disposition, (b"filename", filename) if filename else None) if disposition else None
    return BodyData(
        (main_type, subtype, params, content_id, None, b"base64", size, None, disposition_field, None, None)
    )


def multipart(children: Sequence[BodyData], subtype: bytes = b"mixed") -> BodyData:
    return BodyData((list(children), subtype, (b"boundary", b"=_boundary"), None, None, None))


def three_part_structure() -> BodyData:
    """multipart/mixed: text/plain, text/html, application/pdf attachment."""
    return multipart(
        [
            text_part(b"plain"),
            text_part(b"html"),
            file_part(b"application", b"pdf", b"invoice.pdf", size=4096),
        ]
    )


def address(email: str, name: Optional[str] = None) -> Address:
    mailbox, _, host = email.partition("@")
    return Address(
        name=name.encode() if name else None,
        route=None,
        mailbox=mailbox.encode(),
        host=host.encode(),
    )


# ============================================================================
# Mock IMAP Server
# ============================================================================


@dataclass
class MockMessage:
    uid: int
    envelope: Envelope
    body: BodyData
    internal_date: datetime
    flags: Tuple[bytes, ...] = ()
    size: int = 1024
    parts: Dict[str, bytes] = field(default_factory=dict)
    source: bytes = b""
    received: Optional[datetime] = None


class MockImapServer:
    """In-memory mailbox shared by every client the tests create.

    ``search`` returns every UID unless ``since_timezone`` is set; then a
    ``SINCE`` criterion compares dates in that zone and ignores the time,
    the way RFC 3501 servers evaluate it.
    """

    def __init__(self, password: str = MAILBOX_PASSWORD) -> None:
        self.password = password
        self.folders: Set[str] = {"INBOX"}
        self.messages: Dict[int, MockMessage] = {}
        self.clients: List["MockIMAPClient"] = []
        self.search_criteria: List[Any] = []
        self.failing_sections: Set[str] = set()
        self.connection_dropped = False
        self.since_timezone: Optional[tzinfo] = None

    def add_message(
        self,
        uid: int,
        *,
        to: Iterable[str],
        cc: Iterable[str] = (),
        bcc: Iterable[str] = (),
        subject: bytes = b"Hello",
        received: Optional[datetime] = None,
        body: Optional[BodyData] = None,
        parts: Optional[Dict[str, bytes]] = None,
        source: bytes = b"",
        flags: Tuple[bytes, ...] = (),
        sender: str = "sender@example.org",
        message_id: bytes = b"<msg@example.org>",
    ) -> MockMessage:
        received = received or datetime.now(timezone.utc) - timedelta(minutes=5)
        envelope = Envelope(
            date=received,
            subject=subject,
            from_=(address(sender, "Sender"),),
            sender=(address(sender, "Sender"),),
            reply_to=None,
            to=tuple(address(item) for item in to) or None,
            cc=tuple(address(item) for item in cc) or None,
            bcc=tuple(address(item) for item in bcc) or None,
            in_reply_to=None,
            message_id=message_id,
        )
        message = MockMessage(
            uid=uid,
            envelope=envelope,
            body=body if body is not None else text_part(b"plain"),
            # imapclient reports INTERNALDATE as a naive local datetime
            internal_date=received.astimezone().replace(tzinfo=None),
            flags=flags,
            parts=parts or {},
            source=source,
            received=received,
        )
        self.messages[uid] = message
        return message

    def client_factory(self, **kwargs: Any) -> "MockIMAPClient":
        client = MockIMAPClient(self, **kwargs)
        self.clients.append(client)
        return client

    @property
    def logins(self) -> int:
        return sum(1 for client in self.clients if client.logged_in)


class MockIMAPClient:
    """IMAPClient-compatible stub backed by a ``MockImapServer``."""

    def __init__(
        self,
        server: MockImapServer,
        host: str,
        port: int,
        *,
        ssl: bool,
        ssl_context: ssl.SSLContext,
        timeout: float,
        use_uid: bool,
    ) -> None:
        self.server = server
        self.host = host
        self.port = port
        self.ssl = ssl
        self.ssl_context = ssl_context
        self.timeout = timeout
        self.use_uid = use_uid
        self.logged_in = False
        self.logged_out = False
        self.shut_down = False
        self.noop_calls = 0
        self.selected_folder: Optional[str] = None
        self.readonly: Optional[bool] = None
        self.commands: List[str] = []

    def _check(self, command: str) -> None:
        self.commands.append(command)
        if self.server.connection_dropped:
            raise IMAPClientAbortError("socket error: Connection reset by peer")

    def login(self, username: str, password: str) -> None:
        if password != self.server.password:
            raise LoginError("[AUTHENTICATIONFAILED] Invalid credentials (Failure)")
        self.logged_in = True

    def logout(self) -> None:
        self.logged_out = True

    def shutdown(self) -> None:
        self.shut_down = True

    def noop(self) -> Tuple[bytes, List[Any]]:
        self._check("NOOP")
        self.noop_calls += 1
        return b"NOOP completed", []

    def select_folder(self, folder: str, readonly: bool = False) -> Dict[bytes, Any]:
        self._check("SELECT")
        if folder not in self.server.folders:
            raise IMAPClientError("select failed: [NONEXISTENT] Unknown Mailbox")
        self.selected_folder = folder
        self.readonly = readonly
        return {b"EXISTS": len(self.server.messages)}

    def search(self, criteria: Any) -> List[int]:
        self._check("SEARCH")
        self.server.search_criteria.append(criteria)
        zone = self.server.since_timezone
        if zone is None or not criteria or criteria[0] != "SINCE":
            return sorted(self.server.messages)
        since = criteria[1]
        return sorted(
            uid
            for uid, message in self.server.messages.items()
            if message.received.astimezone(zone).date() >= since
        )

    def fetch(self, uids: Iterable[int], items: Sequence[str]) -> Dict[int, Dict[bytes, Any]]:
        self._check("FETCH")
        results: Dict[int, Dict[bytes, Any]] = {}
        for uid in uids:
            message = self.server.messages.get(uid)
            if message is None:
                continue
            data: Dict[bytes, Any] = {b"SEQ": uid}
            for item in items:
                if item == "ENVELOPE":
                    data[b"ENVELOPE"] = message.envelope
                elif item == "BODYSTRUCTURE":
                    data[b"BODYSTRUCTURE"] = message.body
                elif item == "INTERNALDATE":
                    data[b"INTERNALDATE"] = message.internal_date
                elif item == "FLAGS":
                    data[b"FLAGS"] = message.flags
                elif item == "RFC822.SIZE":
                    data[b"RFC822.SIZE"] = message.size
                elif item.startswith("BODY.PEEK["):
                    section = item[len("BODY.PEEK[") : -1]
                    if section in self.server.failing_sections:
                        raise IMAPClientError("FETCH failed")
                    payload = message.source if section == "" else message.parts.get(section)
                    if payload is not None:
                        data[f"BODY[{section}]".encode()] = payload
            results[uid] = data
        return results


@pytest.fixture()
def imap_server(monkeypatch: pytest.MonkeyPatch) -> MockImapServer:
    server = MockImapServer()
    monkeypatch.setattr(cm, "IMAPClient", server.client_factory)
    return server


# ============================================================================
# Settings and credentials
# ============================================================================


@pytest.fixture()
def credentials() -> MailboxCredentials:
    return MailboxCredentials(
        domain="domain.test",
        host="imap.domain.test",
        port=993,
        username="owner@domain.test",
        password=MAILBOX_PASSWORD,
    )


@pytest.fixture()
def plain_settings() -> ImapProviderSettings:
    return ImapProviderSettings()


@pytest.fixture()
def encrypted_settings() -> ImapProviderSettings:
    return ImapProviderSettings(encrypt_tokens=True, encryption_key="test-secret")
