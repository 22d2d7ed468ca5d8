"""Configuration helpers for mailgate."""

from .settings import ImapProviderSettings

__all__ = ["ImapProviderSettings"]
