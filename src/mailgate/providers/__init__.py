"""Mail provider contract and implementations."""

from .base import MailProvider, ProviderCapabilities, ProviderStats

__all__ = ["MailProvider", "ProviderCapabilities", "ProviderStats"]
