"""Session token encoding for the IMAP provider.

The IMAP backend keeps no server-side account, so everything a later request
needs (temporary address plus the real mailbox credentials) travels inside an
opaque token held by the client.

Token formats:
- Plaintext mode: ``base64(JSON(session))``
- Encrypted mode: ``base64(IV(16B) || AuthTag(16B) || Ciphertext)`` where the
  ciphertext is AES-256-GCM over ``JSON(session)`` and the key is
  ``SHA-256(secret)``

Security Properties:
- 128-bit random IV per token
- 128-bit authentication tag (tampering fails decryption)
- Every token carries a fresh ``issuedAt`` so tokens for identical
  credentials are never byte-identical

The mode is a process-wide switch taken from ``ImapProviderSettings``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import secrets
import threading
import time
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from mailgate.configuration.settings import ImapProviderSettings
from mailgate.errors import (
    ConfigurationError,
    InvalidTokenError,
    TokenExpiredError,
)
from mailgate.providers.models import MailboxCredentials, WireModel

logger = logging.getLogger(__name__)

# Constants
IV_SIZE_BYTES = 16
TAG_SIZE_BYTES = 16
MS_PER_HOUR = 60 * 60 * 1000


class ImapSession(WireModel):
    """Temporary address plus the credentials of the mailbox behind it.

    Only ever lives inside a token; nothing is persisted server-side.
    ``issued_at`` is epoch milliseconds and is absent on tokens issued before
    expiry support existed.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    temporary_address: str = Field(..., min_length=3)
    credentials: MailboxCredentials
    issued_at: Optional[int] = Field(default=None, ge=0)


def derive_key(secret: str) -> bytes:
    """Derive the 256-bit AES key from the configured secret."""
    return hashlib.sha256(secret.encode("utf-8")).digest()


class SessionCodec:
    """Encode and decode session tokens.

    Example:
        >>> codec = SessionCodec(ImapProviderSettings(encrypt_tokens=True, encryption_key="k"))
        >>> token = codec.encode(session)
        >>> codec.decode(token).temporary_address
        'abc123@domain.test'
    """

    def __init__(self, settings: Optional[ImapProviderSettings] = None) -> None:
        self.settings = settings or ImapProviderSettings()
        self._stamp_lock = threading.Lock()
        self._last_issued_at = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encode(self, session: ImapSession) -> str:
        """Serialize ``session`` into a token, stamping a fresh ``issued_at``.

        Raises:
            ConfigurationError: Encryption is enabled but no secret is set.
        """
        stamped = session.model_copy(update={"issued_at": self._next_issued_at()})
        payload = self._serialize(stamped)

        if not self.settings.encrypt_tokens:
            return base64.b64encode(payload).decode("ascii")

        key = self._require_key(ConfigurationError)
        iv = secrets.token_bytes(IV_SIZE_BYTES)
        sealed = AESGCM(key).encrypt(iv, payload, None)
        # AESGCM appends the tag; the token layout puts it right after the IV
        ciphertext, tag = sealed[:-TAG_SIZE_BYTES], sealed[-TAG_SIZE_BYTES:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decode(self, token: str) -> ImapSession:
        """Rebuild the session carried by ``token``.

        Raises:
            InvalidTokenError: Malformed token, failed tag verification, or
                missing secret in encrypted mode.
        """
        raw = self._b64decode(token)

        if self.settings.encrypt_tokens:
            key = self._require_key(InvalidTokenError)
            if len(raw) <= IV_SIZE_BYTES + TAG_SIZE_BYTES:
                raise InvalidTokenError("Invalid accessToken", details={"reason": "token too short"})
            iv = raw[:IV_SIZE_BYTES]
            tag = raw[IV_SIZE_BYTES : IV_SIZE_BYTES + TAG_SIZE_BYTES]
            ciphertext = raw[IV_SIZE_BYTES + TAG_SIZE_BYTES :]
            try:
                payload = AESGCM(key).decrypt(iv, ciphertext + tag, None)
            except InvalidTag as exc:
                raise InvalidTokenError(
                    "Invalid accessToken", details={"reason": "authentication failed"}
                ) from exc
        else:
            payload = raw

        return self._deserialize(payload)

    def validate_expiry(self, session: ImapSession, ttl_hours: Optional[int] = None) -> None:
        """Reject sessions older than ``ttl_hours``.

        A ttl of zero or less disables the check, and sessions without
        ``issued_at`` never expire.

        Raises:
            TokenExpiredError: The session is older than the ttl.
        """
        ttl = self.settings.token_ttl_hours if ttl_hours is None else ttl_hours
        if ttl <= 0 or session.issued_at is None:
            return

        age_ms = _now_ms() - session.issued_at
        if age_ms > ttl * MS_PER_HOUR:
            logger.info(
                "Rejected expired session token",
                extra={"ttl_hours": ttl, "age_hours": round(age_ms / MS_PER_HOUR, 2)},
            )
            raise TokenExpiredError(ttl)

    def decode_and_validate(self, token: str) -> ImapSession:
        """Decode ``token`` and enforce the configured ttl."""
        session = self.decode(token)
        self.validate_expiry(session)
        return session

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _next_issued_at(self) -> int:
        # strictly increasing within the process so plaintext tokens stay unique
        with self._stamp_lock:
            issued = max(_now_ms(), self._last_issued_at + 1)
            self._last_issued_at = issued
            return issued

    def _require_key(self, error_type: type) -> bytes:
        secret = self.settings.encryption_key
        if secret is None or not secret.get_secret_value():
            raise error_type(
                "IMAP_ENCRYPTION_KEY is not set (required when token encryption is enabled)"
            )
        return derive_key(secret.get_secret_value())

    @staticmethod
    def _serialize(session: ImapSession) -> bytes:
        return json.dumps(
            session.model_dump(mode="json", by_alias=True), separators=(",", ":")
        ).encode("utf-8")

    @staticmethod
    def _deserialize(payload: bytes) -> ImapSession:
        try:
            return ImapSession.model_validate(json.loads(payload.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
            raise InvalidTokenError(
                "Invalid accessToken", details={"reason": "payload is not a session"}
            ) from exc

    @staticmethod
    def _b64decode(token: str) -> bytes:
        if not isinstance(token, str) or not token.strip():
            raise InvalidTokenError("Invalid accessToken", details={"reason": "empty token"})
        token = token.strip()
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidTokenError(
                "Invalid accessToken", details={"reason": "not base64"}
            ) from exc
        # non-canonical encodings would let distinct strings map to one payload
        if base64.b64encode(raw).decode("ascii") != token:
            raise InvalidTokenError("Invalid accessToken", details={"reason": "not base64"})
        return raw


def _now_ms() -> int:
    return int(time.time() * 1000)


__all__ = [
    "IV_SIZE_BYTES",
    "ImapSession",
    "SessionCodec",
    "TAG_SIZE_BYTES",
    "derive_key",
]
