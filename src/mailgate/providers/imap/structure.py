"""Typed BODYSTRUCTURE tree and the walks the content extractor needs.

imapclient hands back BODYSTRUCTURE as nested tuples (``BodyData``). This
module converts them once into a tree of ``LeafPart`` and ``MultipartNode``
so the rest of the code never indexes into raw protocol tuples.

Part paths follow IMAP section numbering: children of the root multipart are
``1``, ``2``...; their children ``1.1``, ``1.2``... A single-part message has
no path on its root node (the server addresses its body as ``1``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from email.utils import decode_rfc2231
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import unquote

from mailgate.providers.models import EmailAttachment

from .envelope import decode_mime_words

logger = logging.getLogger(__name__)

BODY_TYPES = ("text/plain", "text/html")
DEFAULT_PART = "1"


@dataclass(frozen=True)
class LeafPart:
    """A non-multipart MIME part."""

    mime_type: str
    part: Optional[str] = None
    params: Dict[str, str] = field(default_factory=dict)
    disposition: Optional[str] = None
    disposition_params: Dict[str, str] = field(default_factory=dict)
    encoding: Optional[str] = None
    size: int = 0
    content_id: Optional[str] = None

    @property
    def filename(self) -> Optional[str]:
        return self.disposition_params.get("filename") or self.params.get("name")

    @property
    def charset(self) -> Optional[str]:
        return self.params.get("charset")


@dataclass(frozen=True)
class MultipartNode:
    """A ``multipart/*`` container."""

    mime_type: str
    part: Optional[str] = None
    children: Tuple["StructureNode", ...] = ()


StructureNode = Union[LeafPart, MultipartNode]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _params(raw: Any) -> Dict[str, str]:
    """Turn a flat ``(key, value, key, value...)`` list into a dict.

    Keys are lower-cased; RFC 2231 ``key*`` values are decoded and stored
    under the plain key, RFC 2047 words in values are decoded too.
    """
    if not isinstance(raw, (tuple, list)):
        return {}
    items = [_text(item) or "" for item in raw]
    params: Dict[str, str] = {}
    for key, value in zip(items[0::2], items[1::2]):
        key = key.lower()
        if key.endswith("*"):
            key = key.rstrip("*")
            charset, _language, encoded = decode_rfc2231(value)
            value = unquote(encoded, encoding=charset or "utf-8", errors="replace")
        params[key] = decode_mime_words(value)
    return params


def _disposition(raw: Any) -> Tuple[Optional[str], Dict[str, str]]:
    if not isinstance(raw, (tuple, list)) or not raw:
        return None, {}
    kind = _text(raw[0])
    return (kind.lower() if kind else None), _params(raw[1] if len(raw) > 1 else None)


def _child_path(parent: Optional[str], index: int) -> str:
    return f"{parent}.{index}" if parent else str(index)


def parse_body_structure(body: Sequence[Any], part: Optional[str] = None) -> StructureNode:
    """Build a ``StructureNode`` from an imapclient ``BodyData`` tuple."""
    if isinstance(body[0], list):
        subtype = (_text(body[1]) or "mixed").lower()
        children = tuple(
            parse_body_structure(child, _child_path(part, index))
            for index, child in enumerate(body[0], start=1)
        )
        return MultipartNode(mime_type=f"multipart/{subtype}", part=part, children=children)

    main_type = (_text(body[0]) or "text").lower()
    subtype = (_text(body[1]) or "plain").lower()
    mime_type = f"{main_type}/{subtype}"

    # extension data shifts right for types with extra basic fields
    if main_type == "text":
        disposition_index = 9
    elif mime_type == "message/rfc822":
        disposition_index = 11
    else:
        disposition_index = 8
    disposition, disposition_params = _disposition(
        body[disposition_index] if len(body) > disposition_index else None
    )

    content_id = _text(body[3]) if len(body) > 3 else None
    encoding = _text(body[5]) if len(body) > 5 else None
    size = body[6] if len(body) > 6 and isinstance(body[6], int) else 0

    return LeafPart(
        mime_type=mime_type,
        part=part,
        params=_params(body[2] if len(body) > 2 else None),
        disposition=disposition,
        disposition_params=disposition_params,
        encoding=encoding.lower() if encoding else None,
        size=size,
        content_id=content_id.strip("<>").strip() if content_id else None,
    )


# ---------------------------------------------------------------------------
# Walks
# ---------------------------------------------------------------------------


def find_leaf(node: StructureNode, mime_type: str) -> Optional[LeafPart]:
    """Depth-first search for the first leaf of ``mime_type``."""
    if isinstance(node, LeafPart):
        return node if node.mime_type == mime_type else None
    for child in node.children:
        found = find_leaf(child, mime_type)
        if found is not None:
            return found
    return None


def find_part(node: StructureNode, mime_type: str) -> Optional[str]:
    """Return the path of the first node of ``mime_type``, or None.

    Only multipart nodes are descended into. A match without a path (the
    root of a single-part message) is reported as ``"1"``.
    """
    if node.mime_type == mime_type:
        return node.part or DEFAULT_PART
    if isinstance(node, MultipartNode):
        for child in node.children:
            path = find_part(child, mime_type)
            if path is not None:
                return path
    return None


def _is_attachment(node: LeafPart) -> bool:
    if node.mime_type in BODY_TYPES:
        return False
    return node.disposition in ("attachment", "inline") or bool(node.filename)


def find_attachments(
    node: StructureNode, acc: Optional[List[EmailAttachment]] = None
) -> List[EmailAttachment]:
    """Collect attachment metadata from the whole tree into ``acc``."""
    if acc is None:
        acc = []

    if isinstance(node, MultipartNode):
        for child in node.children:
            find_attachments(child, acc)
        return acc

    if _is_attachment(node):
        ordinal = len(acc) + 1
        acc.append(
            EmailAttachment(
                id=node.part or str(ordinal),
                filename=node.filename or f"attachment-{ordinal}",
                content_type=node.mime_type,
                size=node.size,
                inline=node.disposition == "inline",
                content_id=node.content_id,
            )
        )
    return acc


__all__ = [
    "LeafPart",
    "MultipartNode",
    "StructureNode",
    "find_attachments",
    "find_leaf",
    "find_part",
    "parse_body_structure",
]
