"""Tests for session token encoding."""

from __future__ import annotations

import base64
import json

import pytest

from mailgate.configuration.settings import ImapProviderSettings
from mailgate.errors import ConfigurationError, InvalidTokenError, TokenExpiredError
from mailgate.providers.imap import session_codec
from mailgate.providers.imap.session_codec import (
    IV_SIZE_BYTES,
    MS_PER_HOUR,
    TAG_SIZE_BYTES,
    ImapSession,
    SessionCodec,
    derive_key,
)


@pytest.fixture()
def session(credentials) -> ImapSession:
    return ImapSession(temporary_address="abc123@domain.test", credentials=credentials)


@pytest.mark.parametrize("settings_fixture", ["plain_settings", "encrypted_settings"])
def test_round_trip_preserves_session(request, session, settings_fixture) -> None:
    codec = SessionCodec(request.getfixturevalue(settings_fixture))

    decoded = codec.decode(codec.encode(session))

    assert decoded.temporary_address == session.temporary_address
    assert decoded.credentials == session.credentials
    assert decoded.issued_at is not None


@pytest.mark.parametrize("settings_fixture", ["plain_settings", "encrypted_settings"])
def test_tokens_for_identical_sessions_differ(request, session, settings_fixture) -> None:
    codec = SessionCodec(request.getfixturevalue(settings_fixture))

    first, second = codec.encode(session), codec.encode(session)

    assert first != second
    assert codec.decode(first).issued_at < codec.decode(second).issued_at


def test_plaintext_token_is_base64_json(session, plain_settings) -> None:
    token = SessionCodec(plain_settings).encode(session)

    payload = json.loads(base64.b64decode(token))

    assert payload["temporaryAddress"] == "abc123@domain.test"
    assert payload["credentials"]["username"] == "owner@domain.test"
    assert "issuedAt" in payload


def test_encrypted_token_layout(session, encrypted_settings) -> None:
    token = SessionCodec(encrypted_settings).encode(session)
    raw = base64.b64decode(token)

    assert len(raw) > IV_SIZE_BYTES + TAG_SIZE_BYTES
    assert b"owner@domain.test" not in raw
    assert len(derive_key("test-secret")) == 32


def test_encrypt_without_secret_is_configuration_error(session) -> None:
    codec = SessionCodec(ImapProviderSettings(encrypt_tokens=True))

    with pytest.raises(ConfigurationError):
        codec.encode(session)


def test_decode_without_secret_is_invalid_token(session, encrypted_settings) -> None:
    token = SessionCodec(encrypted_settings).encode(session)

    with pytest.raises(InvalidTokenError):
        SessionCodec(ImapProviderSettings(encrypt_tokens=True)).decode(token)


def test_flipping_any_byte_is_rejected(session, encrypted_settings) -> None:
    codec = SessionCodec(encrypted_settings)
    raw = bytearray(base64.b64decode(codec.encode(session)))

    for index in range(len(raw)):
        tampered = bytearray(raw)
        tampered[index] ^= 0x01
        with pytest.raises(InvalidTokenError):
            codec.decode(base64.b64encode(bytes(tampered)).decode("ascii"))


def test_wrong_secret_is_rejected(session, encrypted_settings) -> None:
    token = SessionCodec(encrypted_settings).encode(session)
    other = SessionCodec(ImapProviderSettings(encrypt_tokens=True, encryption_key="other-secret"))

    with pytest.raises(InvalidTokenError):
        other.decode(token)


@pytest.mark.parametrize(
    "token",
    ["", "not base64 at all!", base64.b64encode(b"short").decode(), "QUJD="],
)
def test_malformed_tokens_are_invalid(encrypted_settings, token) -> None:
    with pytest.raises(InvalidTokenError):
        SessionCodec(encrypted_settings).decode(token)


def test_plaintext_garbage_is_invalid(plain_settings) -> None:
    token = base64.b64encode(b'{"temporaryAddress": 1}').decode("ascii")

    with pytest.raises(InvalidTokenError):
        SessionCodec(plain_settings).decode(token)


def test_expired_session_is_rejected(monkeypatch, session) -> None:
    codec = SessionCodec(ImapProviderSettings(token_ttl_hours=24))
    now = 1_700_000_000_000
    monkeypatch.setattr(session_codec, "_now_ms", lambda: now)
    old = session.model_copy(update={"issued_at": now - 25 * MS_PER_HOUR})

    with pytest.raises(TokenExpiredError) as excinfo:
        codec.validate_expiry(old)
    assert excinfo.value.ttl_hours == 24

    codec.validate_expiry(old, ttl_hours=0)
    codec.validate_expiry(session.model_copy(update={"issued_at": now - 23 * MS_PER_HOUR}))


def test_session_without_issued_at_never_expires(session) -> None:
    codec = SessionCodec(ImapProviderSettings(token_ttl_hours=1))
    legacy = base64.b64encode(
        json.dumps(
            {
                "temporaryAddress": session.temporary_address,
                "credentials": session.credentials.model_dump(by_alias=True),
            }
        ).encode()
    ).decode("ascii")

    decoded = codec.decode_and_validate(legacy)

    assert decoded.issued_at is None
