"""Recent-message listing for a temporary address."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from mailgate.providers.models import DEFAULT_FOLDER, MessageSummary

from .connection_manager import ImapHandle
from .envelope import SUMMARY_FETCH_ITEMS, build_summary, recipient_set, to_utc

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)
SEARCH_DATE_SLACK = timedelta(days=1)


class MailboxQuery:
    """Lists the last day of mail delivered to one temporary address.

    Every disposable address shares the real mailbox behind it, so results
    are narrowed to messages whose To, Cc or Bcc contains the address
    exactly (case-insensitive). Substring and domain matches are rejected.
    """

    def __init__(
        self,
        provider_name: str = "imap",
        *,
        window: timedelta = DEFAULT_WINDOW,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.provider_name = provider_name
        self.window = window
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def list_recent(
        self, handle: ImapHandle, temporary_address: str, folder: str = DEFAULT_FOLDER
    ) -> List[MessageSummary]:
        """Return matching messages from the window, newest first."""
        cutoff = self._clock() - self.window
        target = temporary_address.strip().lower()

        await handle.mailbox_open(folder)
        # SINCE compares dates in the server's zone, so search one day
        # earlier and re-check the exact cutoff below
        uids = await handle.search(["SINCE", (cutoff - SEARCH_DATE_SLACK).date()])
        if not uids:
            logger.debug("No messages in search window", extra={"folder": folder})
            return []

        summaries: List[MessageSummary] = []
        skipped_old = skipped_recipient = 0
        async for uid, data in handle.fetch(uids, SUMMARY_FETCH_ITEMS):
            if to_utc(data.get(b"INTERNALDATE")) < cutoff:
                skipped_old += 1
                continue
            if target not in recipient_set(data.get(b"ENVELOPE")):
                skipped_recipient += 1
                continue
            summaries.append(build_summary(uid, data, self.provider_name))

        summaries.sort(key=lambda summary: summary.received_at, reverse=True)
        logger.info(
            "Listed recent messages",
            extra={
                "folder": folder,
                "searched": len(uids),
                "matched": len(summaries),
                "skipped_old": skipped_old,
                "skipped_recipient": skipped_recipient,
            },
        )
        return summaries


__all__ = ["DEFAULT_WINDOW", "MailboxQuery"]
