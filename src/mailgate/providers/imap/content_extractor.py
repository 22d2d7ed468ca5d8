"""Full-message retrieval for the IMAP provider.

The message is fetched once with its envelope, BODYSTRUCTURE and raw source.
Body parts are located by walking the structure tree and downloaded one by
one; when that yields nothing the raw source is scanned with regular
expressions instead.
"""

from __future__ import annotations

import base64
import binascii
import codecs
import logging
import quopri
import re
from typing import Optional, Tuple

from mailgate.errors import ApiError
from mailgate.providers.models import DEFAULT_FOLDER, MessageContent

from .connection_manager import ImapHandle
from .envelope import SUMMARY_FETCH_ITEMS, build_summary
from .structure import StructureNode, find_attachments, find_leaf, find_part, parse_body_structure

logger = logging.getLogger(__name__)

CONTENT_FETCH_ITEMS = SUMMARY_FETCH_ITEMS + ("BODY.PEEK[]",)
SOURCE_KEY = b"BODY[]"

_TEXT_BLOCK_RE = re.compile(
    r"Content-Type:\s*text/plain[\s\S]*?\n\n([\s\S]*?)(?=\n--|\Z)", re.IGNORECASE
)
_HTML_BLOCK_RE = re.compile(
    r"Content-Type:\s*text/html[\s\S]*?\n\n([\s\S]*?)(?=\n--|\Z)", re.IGNORECASE
)


def parse_message_id(message_id: str) -> int:
    """Validate an e-mail id; only positive numeric UIDs are accepted."""
    value = str(message_id).strip()
    if not value.isdigit() or int(value) <= 0:
        raise ApiError(
            "Email not found",
            operation="get_email_content",
            reason="email id is not a valid UID",
            details={"email_id": str(message_id)},
        )
    return int(value)


def decode_part(raw: bytes, encoding: Optional[str], charset: Optional[str]) -> str:
    """Undo the transfer encoding and decode text with the part charset."""
    data = raw
    if encoding == "base64":
        try:
            data = base64.b64decode(raw)
        except (binascii.Error, ValueError):
            logger.debug("Invalid base64 body part, using raw bytes")
    elif encoding == "quoted-printable":
        data = quopri.decodestring(raw)

    name = charset or "utf-8"
    try:
        codecs.lookup(name)
    except LookupError:
        name = "utf-8"
    return data.decode(name, errors="replace")


def parse_email_source(source: bytes) -> Tuple[Optional[str], Optional[str]]:
    """Best-effort ``(text, html)`` extraction from a raw RFC 822 source."""
    content = source.decode("utf-8", errors="replace").replace("\r\n", "\n")

    text_match = _TEXT_BLOCK_RE.search(content)
    html_match = _HTML_BLOCK_RE.search(content)
    text = text_match.group(1).strip() if text_match else None
    html = html_match.group(1).strip() if html_match else None

    if not text and not html:
        _headers, separator, body = content.partition("\n\n")
        text = body.strip() if separator else None

    return text or None, html or None


class ContentExtractor:
    """Fetches one message by UID and extracts bodies and attachments."""

    def __init__(self, provider_name: str = "imap") -> None:
        self.provider_name = provider_name

    async def fetch_one(
        self, handle: ImapHandle, message_id: str, folder: str = DEFAULT_FOLDER
    ) -> MessageContent:
        uid = parse_message_id(message_id)

        await handle.mailbox_open(folder)
        data = await handle.fetch_one(uid, CONTENT_FETCH_ITEMS)
        if not data:
            raise ApiError(
                "Email not found",
                operation="get_email_content",
                reason="no message with this UID",
                details={"email_id": str(message_id)},
            )

        text_content = html_content = None
        attachments = []
        raw_structure = data.get(b"BODYSTRUCTURE")
        if raw_structure:
            tree = parse_body_structure(raw_structure)
            text_content = await self._download_body(handle, uid, tree, "text/plain")
            html_content = await self._download_body(handle, uid, tree, "text/html")
            attachments = find_attachments(tree)

        if not text_content and not html_content:
            source = data.get(SOURCE_KEY)
            if source:
                logger.debug("Falling back to raw source extraction", extra={"uid": uid})
                text_content, html_content = parse_email_source(bytes(source))

        return build_summary(
            uid,
            data,
            self.provider_name,
            cls=MessageContent,
            text_content=text_content or None,
            html_content=html_content or None,
            attachments=attachments or None,
        )

    async def _download_body(
        self, handle: ImapHandle, uid: int, tree: StructureNode, mime_type: str
    ) -> Optional[str]:
        path = find_part(tree, mime_type)
        if path is None:
            return None

        leaf = find_leaf(tree, mime_type)
        try:
            raw = await handle.download(uid, path)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Failed to download body part",
                extra={"uid": uid, "part": path, "mime_type": mime_type, "error_type": type(exc).__name__},
            )
            return None

        if not raw:
            return None
        return decode_part(
            raw,
            leaf.encoding if leaf is not None else None,
            leaf.charset if leaf is not None else None,
        )


__all__ = [
    "CONTENT_FETCH_ITEMS",
    "ContentExtractor",
    "decode_part",
    "parse_email_source",
    "parse_message_id",
]
