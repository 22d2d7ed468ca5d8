"""IMAP-backed disposable mailbox provider."""

from .connection_manager import ConnectionPool, ImapHandle
from .provider import ImapProvider
from .session_codec import ImapSession, SessionCodec

__all__ = ["ConnectionPool", "ImapHandle", "ImapProvider", "ImapSession", "SessionCodec"]
