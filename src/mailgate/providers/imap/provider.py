"""IMAP-backed disposable mailbox provider.

Any real mailbox with a catch-all domain can act as a disposable address
backend: ``create_email`` hands out ``<prefix>@<domain>`` addresses and an
access token carrying the mailbox credentials; listing narrows the shared
inbox down to mail sent to that one address.

The provider keeps no per-address state. Live IMAP sessions are pooled per
credential set and reused across requests until the background sweep evicts
them, so ``start()``/``close()`` (or ``async with``) should bracket its use.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Tuple

from mailgate.configuration.settings import ImapProviderSettings
from mailgate.errors import InvalidRequestError, InvalidTokenError
from mailgate.providers.base import MailProvider, ProviderCapabilities
from mailgate.providers.models import (
    CreateEmailRequest,
    CreateEmailResponse,
    MailboxCredentials,
    ProviderResponse,
)

from .addressing import generate_email_prefix
from .connection_manager import ConnectionPool
from .content_extractor import ContentExtractor
from .error_classifier import classify_error
from .mailbox_query import MailboxQuery
from .session_codec import ImapSession, SessionCodec

logger = logging.getLogger(__name__)

_PREFIX_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]{0,63}$")


class ImapProvider(MailProvider):
    """Disposable addresses on top of a real IMAP mailbox.

    Example:
        >>> async with ImapProvider() as provider:
        ...     created = await provider.create_email(CreateEmailRequest(imap=credentials))
        ...     token = created.data.access_token
        ...     listing = await provider.get_emails(created.data.address, token)
    """

    name = "imap"
    capabilities = ProviderCapabilities(
        custom_prefix=True,
        requires_access_token=True,
        stateful_connections=True,
    )

    def __init__(
        self,
        settings: Optional[ImapProviderSettings] = None,
        *,
        pool: Optional[ConnectionPool] = None,
        codec: Optional[SessionCodec] = None,
    ) -> None:
        super().__init__()
        self.settings = settings or ImapProviderSettings.from_env()
        self.codec = codec or SessionCodec(self.settings)
        self.pool = pool or ConnectionPool.from_settings(self.settings)
        self.query = MailboxQuery(self.name)
        self.extractor = ContentExtractor(self.name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the connection pool sweep."""
        self.pool.start()

    async def close(self) -> None:
        """Stop the sweep and log out of all pooled connections."""
        await self.pool.close()

    async def __aenter__(self) -> "ImapProvider":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def pool_size(self) -> Optional[int]:
        return len(self.pool)

    def connection_stats(self) -> Optional[Dict[str, Any]]:
        return self.pool.metrics.to_dict()

    # ------------------------------------------------------------------
    # Provider operations
    # ------------------------------------------------------------------

    async def create_email(self, request: CreateEmailRequest) -> ProviderResponse:
        """Verify the mailbox credentials and issue an address plus token."""
        started = self._begin(count=True)
        try:
            credentials = self._require_credentials(request)
            await self.pool.verify(credentials)
            address, username, domain = self._issue_address(request, credentials)
            token = self.codec.encode(
                ImapSession(temporary_address=address, credentials=credentials)
            )
        except Exception as exc:
            return self._handle_error(exc, started, "create_email")

        logger.info(
            "Issued IMAP mailbox address",
            extra={"domain": domain, "is_mine": request.is_mine, "custom_prefix": bool(request.prefix)},
        )
        response = CreateEmailResponse(
            address=address,
            domain=domain,
            username=username,
            provider=self.name,
            access_token=token,
            expires_at=None,
        )
        return self._success(response, started, operation="create_email")

    async def get_emails(
        self, address: str, access_token: Optional[str] = None
    ) -> ProviderResponse:
        """List the last day of mail for the address inside ``access_token``.

        The token's address wins over ``address``; a token only ever grants
        access to the address it was issued for.
        """
        started = self._begin(count=True)
        try:
            session = self._session(access_token)
            if address and address.strip().lower() != session.temporary_address.lower():
                logger.debug("Requested address differs from token address, using token")
            credentials = session.credentials
            async with self.pool.lease(credentials) as handle:
                messages = await self.query.list_recent(
                    handle, session.temporary_address, credentials.folder
                )
        except Exception as exc:
            return self._handle_error(exc, started, "get_emails")

        return self._success(messages, started, operation="get_emails", total=len(messages))

    async def get_email_content(
        self, address: str, email_id: str, access_token: Optional[str] = None
    ) -> ProviderResponse:
        """Return one message (bodies plus attachment metadata) by UID."""
        started = self._begin(count=True)
        try:
            session = self._session(access_token)
            credentials = session.credentials
            async with self.pool.lease(credentials) as handle:
                message = await self.extractor.fetch_one(handle, email_id, credentials.folder)
        except Exception as exc:
            return self._handle_error(exc, started, "get_email_content")

        return self._success(message, started, operation="get_email_content")

    async def test_connection(
        self, credentials: Optional[MailboxCredentials] = None
    ) -> ProviderResponse:
        """Log in with ``credentials`` if given; the provider itself has no fixed backend."""
        checking = credentials is not None
        started = self._begin(count=checking)
        if checking:
            try:
                await self.pool.verify(credentials)
            except Exception as exc:
                return self._handle_error(exc, started, "test_connection")
        return self._success(True, started, operation="test_connection", record=checking)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _session(self, access_token: Optional[str]) -> ImapSession:
        if not access_token:
            raise InvalidTokenError("accessToken is required", details={"reason": "missing token"})
        return self.codec.decode_and_validate(access_token)

    @staticmethod
    def _require_credentials(request: CreateEmailRequest) -> MailboxCredentials:
        credentials = request.imap
        if credentials is None:
            raise InvalidRequestError(
                "imap credentials are required for the imap provider",
                details={"field": "imap"},
            )
        if not request.is_mine and not credentials.domain:
            raise InvalidRequestError(
                "imap.domain is required unless is_mine is set",
                details={"field": "imap.domain"},
            )
        if request.prefix is not None and not _PREFIX_RE.match(request.prefix):
            raise InvalidRequestError(
                "prefix must be a valid e-mail local part",
                details={"field": "prefix"},
            )
        return credentials

    @staticmethod
    def _issue_address(
        request: CreateEmailRequest, credentials: MailboxCredentials
    ) -> Tuple[str, str, str]:
        if request.is_mine:
            username, _, domain = credentials.username.partition("@")
            return credentials.username, username, domain or credentials.domain or ""

        username = request.prefix or generate_email_prefix()
        domain = credentials.domain or ""
        return f"{username}@{domain}", username, domain

    def _handle_error(self, exc: BaseException, started: float, operation: str) -> ProviderResponse:
        error = classify_error(exc, operation)
        if error is not exc:
            logger.debug("IMAP %s failed", operation, exc_info=exc)
        return self._failure(error, started, operation=operation)


__all__ = ["ImapProvider"]
