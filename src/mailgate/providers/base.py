"""Base class for all mail providers.

Provides common functionality:
- Request statistics and health reporting
- Uniform ``ProviderResponse`` construction
- Timing utilities

Providers differ widely (stateless HTTP wrappers vs. the stateful IMAP
backend), so each declares what it supports through ``ProviderCapabilities``
and callers check those tags instead of the concrete type.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from mailgate.errors import MailgateError
from mailgate.providers.models import (
    CreateEmailRequest,
    ProviderErrorInfo,
    ProviderHealth,
    ProviderResponse,
    ProviderStatus,
    ResponseMetadata,
)

logger = logging.getLogger(__name__)

HEALTHY_SUCCESS_RATE = 80.0
DEGRADED_SUCCESS_RATE = 50.0


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature tags a provider advertises."""

    create_email: bool = True
    list_emails: bool = True
    get_email_content: bool = True
    custom_prefix: bool = False
    requires_access_token: bool = False
    stateful_connections: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


@dataclass
class ProviderStats:
    """Request counters for one provider instance.

    Attributes:
        total_requests: Requests started
        successful_requests: Requests that returned ``success=True``
        failed_requests: Requests that returned ``success=False``
        average_response_time_ms: Incremental mean over completed requests
        last_request_time: When the most recent request finished
    """

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time_ms: float = 0.0
    last_request_time: Optional[datetime] = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def success_rate(self) -> float:
        """Percentage of finished requests that succeeded (100 when idle)."""
        finished = self.successful_requests + self.failed_requests
        if finished == 0:
            return 100.0
        return self.successful_requests / finished * 100.0

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started_at

    def record(self, success: bool, elapsed_ms: float) -> None:
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        completed = self.successful_requests + self.failed_requests
        self.average_response_time_ms += (elapsed_ms - self.average_response_time_ms) / completed
        self.last_request_time = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate": round(self.success_rate, 2),
            "average_response_time_ms": round(self.average_response_time_ms, 2),
            "last_request_time": self.last_request_time.isoformat() if self.last_request_time else None,
            "uptime_seconds": round(self.uptime_seconds, 2),
        }


class MailProvider(ABC):
    """Abstract base class for mail providers.

    Subclasses must implement:
    - create_email(): Issue a new address (and access token if needed)
    - get_emails(): List messages for an address
    - get_email_content(): Return one full message
    - test_connection(): Check that the backend is reachable
    """

    name: str = "base"
    capabilities: ProviderCapabilities = ProviderCapabilities()

    def __init__(self) -> None:
        self.stats = ProviderStats()

    @abstractmethod
    async def create_email(self, request: CreateEmailRequest) -> ProviderResponse:
        pass

    @abstractmethod
    async def get_emails(
        self, address: str, access_token: Optional[str] = None
    ) -> ProviderResponse:
        pass

    @abstractmethod
    async def get_email_content(
        self, address: str, email_id: str, access_token: Optional[str] = None
    ) -> ProviderResponse:
        pass

    @abstractmethod
    async def test_connection(self) -> ProviderResponse:
        pass

    # ------------------------------------------------------------------
    # Stats and health
    # ------------------------------------------------------------------

    def pool_size(self) -> Optional[int]:
        """Live connections held by the provider, if it holds any."""
        return None

    def connection_stats(self) -> Optional[Dict[str, Any]]:
        """Connection counters for providers that hold live connections."""
        return None

    async def get_health(self) -> ProviderResponse:
        started = self._begin()
        health = ProviderHealth(
            status=self._status(self.stats.success_rate),
            last_checked=datetime.now(timezone.utc),
            error_count=self.stats.failed_requests,
            success_rate=round(self.stats.success_rate, 2),
            uptime_seconds=round(self.stats.uptime_seconds, 2),
            response_time_ms=round(self.stats.average_response_time_ms, 2),
            pool_size=self.pool_size(),
        )
        return self._success(health, started, operation="get_health", record=False)

    async def get_stats(self) -> ProviderResponse:
        started = self._begin()
        data = self.stats.to_dict()
        data["capabilities"] = self.capabilities.to_dict()
        pool_size = self.pool_size()
        if pool_size is not None:
            data["pool_size"] = pool_size
        connections = self.connection_stats()
        if connections is not None:
            data["connections"] = connections
        return self._success(data, started, operation="get_stats", record=False)

    @staticmethod
    def _status(success_rate: float) -> ProviderStatus:
        if success_rate >= HEALTHY_SUCCESS_RATE:
            return ProviderStatus.ACTIVE
        if success_rate >= DEGRADED_SUCCESS_RATE:
            return ProviderStatus.DEGRADED
        return ProviderStatus.ERROR

    # ------------------------------------------------------------------
    # Envelope helpers
    # ------------------------------------------------------------------

    def _begin(self, *, count: bool = False) -> float:
        if count:
            self.stats.total_requests += 1
        return time.perf_counter()

    def _metadata(self, started: float, operation: str, total: Optional[int] = None) -> ResponseMetadata:
        return ResponseMetadata(
            provider=self.name,
            response_time_ms=round((time.perf_counter() - started) * 1000, 2),
            operation=operation,
            total=total,
        )

    def _success(
        self,
        data: Any,
        started: float,
        *,
        operation: str,
        total: Optional[int] = None,
        record: bool = True,
    ) -> ProviderResponse:
        metadata = self._metadata(started, operation, total)
        if record:
            self.stats.record(True, metadata.response_time_ms)
        return ProviderResponse(success=True, data=data, metadata=metadata)

    def _failure(self, error: MailgateError, started: float, *, operation: str) -> ProviderResponse:
        metadata = self._metadata(started, operation)
        self.stats.record(False, metadata.response_time_ms)
        logger.warning(
            "Provider operation failed",
            extra={
                "provider": self.name,
                "operation": operation,
                "error_code": error.code,
                "retryable": error.retryable,
            },
        )
        info = ProviderErrorInfo(
            type=error.code,
            message=error.message,
            provider=self.name,
            retryable=error.retryable,
            context=dict(error.details),
        )
        return ProviderResponse(success=False, error=info, metadata=metadata)


__all__ = ["MailProvider", "ProviderCapabilities", "ProviderStats"]
