"""IMAP connection lifecycle and pooling for the IMAP provider.

Live IMAP sessions are expensive to establish (TLS handshake + LOGIN), so the
provider keeps them in a process-wide pool keyed by ``host:port:username`` and
reuses them across requests. The pool:

- creates connections on demand and checks pooled ones before reuse,
- serializes use of one connection per key so concurrent requests never
  interleave protocol commands on a single session,
- drops connections that hit transport errors,
- evicts idle or dead connections from a periodic background sweep.

``imapclient`` is synchronous; every blocking call runs in the event loop's
default executor so the provider itself stays fully asynchronous.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import ssl
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

import certifi
from imapclient import IMAPClient

from mailgate.configuration.settings import (
    DEFAULT_POOL_MAX_IDLE_SECONDS,
    DEFAULT_POOL_SWEEP_INTERVAL_SECONDS,
    DEFAULT_TIMEOUT_MS,
    ImapProviderSettings,
)
from mailgate.providers.models import MailboxCredentials

from .error_classifier import classify_error, is_connection_error

logger = logging.getLogger(__name__)


HandleListener = Callable[[str, Optional[BaseException]], None]


# ---------------------------------------------------------------------------
# Connection state and metrics
# ---------------------------------------------------------------------------


class ConnectionState(str, Enum):
    """Lifecycle states for a single IMAP handle."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


@dataclass
class ConnectionMetrics:
    """Aggregated pool metrics for health reporting."""

    total_connections: int = 0
    successful_connections: int = 0
    failed_connections: int = 0
    average_connection_time: float = 0.0
    reused_connections: int = 0
    evicted_connections: int = 0

    def record_attempt(self, success: bool, elapsed: float) -> None:
        self.total_connections += 1
        if success:
            self.successful_connections += 1
            # incremental average to avoid large arrays
            self.average_connection_time += (
                elapsed - self.average_connection_time
            ) / max(1, self.successful_connections)
        else:
            self.failed_connections += 1

    def record_reuse(self) -> None:
        self.reused_connections += 1

    def record_eviction(self) -> None:
        self.evicted_connections += 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["average_connection_time"] = round(self.average_connection_time, 4)
        return data


# ---------------------------------------------------------------------------
# Live handle
# ---------------------------------------------------------------------------


class ImapHandle:
    """One live, logged-in IMAP session with an async call surface.

    Messages are always addressed by UID (``use_uid=True``); sequence numbers
    are never used.
    """

    def __init__(
        self,
        credentials: MailboxCredentials,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_MS / 1000,
    ) -> None:
        self.credentials = credentials
        self.timeout_seconds = timeout_seconds
        self.client: Optional[IMAPClient] = None
        self.state = ConnectionState.DISCONNECTED
        self.last_activity: Optional[float] = None
        self._listeners: List[HandleListener] = []
        self._abandoned = False
        self._handoff = threading.Lock()

    # -- lifecycle -----------------------------------------------------

    @property
    def usable(self) -> bool:
        return self.client is not None and self.state == ConnectionState.READY

    def add_listener(self, listener: HandleListener) -> None:
        """Register ``listener(event, exc)`` for ``"error"`` and ``"close"`` events."""
        self._listeners.append(listener)

    async def connect(self) -> None:
        """Open the TLS connection and log in, bounded by the handshake timeout."""
        self.state = ConnectionState.CONNECTING
        try:
            await asyncio.wait_for(self._run(self._open), timeout=self.timeout_seconds)
        except Exception:
            with self._handoff:
                self._abandoned = True
                orphan, self.client = self.client, None
            self.state = ConnectionState.FAILED
            if orphan is not None:
                await self._close_orphan(orphan)
            raise
        self.state = ConnectionState.READY
        self.last_activity = time.monotonic()
        logger.info("IMAP connection established", extra={"pool_key": self.credentials.pool_key})

    def _open(self) -> None:
        client = IMAPClient(
            host=self.credentials.host,
            port=self.credentials.port,
            ssl=True,
            ssl_context=self._create_ssl_context(),
            timeout=self.timeout_seconds,
            use_uid=True,
        )
        try:
            client.login(self.credentials.username, self.credentials.password)
        except Exception:
            client.shutdown()
            raise
        with self._handoff:
            abandoned = self._abandoned
            if not abandoned:
                self.client = client
        if abandoned:
            # the handshake timed out while this thread was still working
            client.logout()

    async def _close_orphan(self, client: IMAPClient) -> None:
        try:
            await self._run(client.logout)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Error closing abandoned IMAP connection",
                exc_info=exc,
                extra={"pool_key": self.credentials.pool_key},
            )

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        return context

    async def logout(self) -> None:
        """Best-effort LOGOUT; errors are logged, never raised."""
        client = self.client
        if client is None:
            return
        try:
            await self._run(client.logout)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Error during logout",
                exc_info=exc,
                extra={"pool_key": self.credentials.pool_key},
            )
        finally:
            self.client = None
            self.state = ConnectionState.DISCONNECTED
            self._notify("close", None)

    async def is_alive(self) -> bool:
        """Liveness check: the handle is usable and answers NOOP."""
        if not self.usable:
            return False
        try:
            await self._call("noop")
        except Exception:  # noqa: BLE001
            return False
        return True

    # -- protocol operations -------------------------------------------

    async def mailbox_open(self, folder: str) -> Dict[bytes, Any]:
        """SELECT ``folder`` read-only so fetching never changes flags."""
        return await self._call("select_folder", folder, readonly=True)

    async def search(self, criteria: Sequence[Any]) -> List[int]:
        return list(await self._call("search", list(criteria)))

    async def fetch(
        self, uids: Iterable[int], items: Sequence[str]
    ) -> AsyncIterator[Tuple[int, Dict[bytes, Any]]]:
        """Yield ``(uid, data)`` pairs for ``uids`` in ascending UID order."""
        uid_list = list(uids)
        if not uid_list:
            return
        response = await self._call("fetch", uid_list, list(items))
        for uid in sorted(response):
            yield uid, response[uid]

    async def fetch_one(self, uid: int, items: Sequence[str]) -> Optional[Dict[bytes, Any]]:
        response = await self._call("fetch", [uid], list(items))
        return response.get(uid)

    async def download(self, uid: int, part: str) -> bytes:
        """Return the raw (still transfer-encoded) bytes of MIME part ``part``."""
        response = await self._call("fetch", [uid], [f"BODY.PEEK[{part}]"])
        data = response.get(uid) or {}
        payload = data.get(f"BODY[{part}]".encode("ascii"))
        return bytes(payload) if payload else b""

    # -- internals -----------------------------------------------------

    async def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        if not self.usable:
            raise ConnectionError("Connection not available")
        try:
            result = await self._run(getattr(self.client, method), *args, **kwargs)
        except Exception as exc:
            if is_connection_error(exc):
                self.state = ConnectionState.FAILED
                self._notify("error", exc)
            raise
        self.last_activity = time.monotonic()
        return result

    def _notify(self, event: str, exc: Optional[BaseException]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, exc)
            except Exception:  # pragma: no cover - listener failures must not break I/O
                logger.exception("IMAP handle listener failed")


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


@dataclass
class PooledConnection:
    """Pool entry: one live handle per credential set."""

    key: str
    handle: ImapHandle
    last_used_at: float = field(default_factory=time.monotonic)


class ConnectionPool:
    """Process-wide pool of live IMAP handles keyed by ``host:port:username``.

    The entry map is only mutated under ``_lock``. Use of a handle is
    serialized per key through ``lease()``; ``acquire``/``release`` remain
    available for callers that manage exclusivity themselves.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_MS / 1000,
        max_idle_seconds: float = DEFAULT_POOL_MAX_IDLE_SECONDS,
        sweep_interval_seconds: float = DEFAULT_POOL_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_idle_seconds = max_idle_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.metrics = ConnectionMetrics()
        self._clock = clock
        self._entries: Dict[str, PooledConnection] = {}
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._key_holders: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._stop: Optional[asyncio.Event] = None
        self._sweep_task: Optional[asyncio.Task[None]] = None
        self._background: Set[asyncio.Task[Any]] = set()

    @classmethod
    def from_settings(cls, settings: ImapProviderSettings) -> "ConnectionPool":
        return cls(
            timeout_seconds=settings.timeout_seconds,
            max_idle_seconds=settings.pool_max_idle_seconds,
            sweep_interval_seconds=settings.pool_sweep_interval_seconds,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, credentials: object) -> bool:
        key = credentials.pool_key if isinstance(credentials, MailboxCredentials) else credentials
        return key in self._entries

    def keys(self) -> List[str]:
        return list(self._entries)

    # -- public API ----------------------------------------------------

    async def acquire(self, credentials: MailboxCredentials) -> ImapHandle:
        """Return a live handle for ``credentials``, reusing a pooled one if it answers."""
        key = credentials.pool_key
        async with self._lock:
            entry = self._entries.get(key)

        if entry is not None:
            if await entry.handle.is_alive():
                entry.last_used_at = self._clock()
                self.metrics.record_reuse()
                logger.debug("Reusing pooled IMAP connection", extra={"pool_key": key})
                return entry.handle
            logger.info("Pooled IMAP connection unusable, reconnecting", extra={"pool_key": key})
            await self._discard(key, entry.handle, reason="unusable")

        handle = await self._connect(credentials)
        async with self._lock:
            existing = self._entries.get(key)
            if existing is None:
                self._entries[key] = PooledConnection(key=key, handle=handle, last_used_at=self._clock())
                return handle
            existing.last_used_at = self._clock()

        # another caller pooled a connection for this key while we connected
        await handle.logout()
        return existing.handle

    async def release(self, credentials: MailboxCredentials, handle: ImapHandle) -> None:
        """Hand a handle back; only refreshes its last-used time."""
        async with self._lock:
            entry = self._entries.get(credentials.pool_key)
            if entry is not None and entry.handle is handle:
                entry.last_used_at = self._clock()

    async def remove(
        self, credentials: MailboxCredentials, handle: Optional[ImapHandle] = None
    ) -> bool:
        """Drop the entry for ``credentials`` (only if it still holds ``handle`` when given)."""
        return await self._discard(credentials.pool_key, handle, reason="removed")

    @asynccontextmanager
    async def lease(self, credentials: MailboxCredentials) -> AsyncIterator[ImapHandle]:
        """Borrow the pooled handle for one request with exclusive use of its key."""
        async with self._hold_key(credentials.pool_key) as key_lock:
            async with key_lock:
                handle = await self.acquire(credentials)
                try:
                    yield handle
                except Exception as exc:
                    if is_connection_error(exc):
                        logger.warning(
                            "Connection error, removing pooled IMAP connection",
                            extra={"pool_key": credentials.pool_key, "error_type": type(exc).__name__},
                        )
                        await self.remove(credentials, handle)
                    raise
                finally:
                    await self.release(credentials, handle)

    async def verify(self, credentials: MailboxCredentials) -> None:
        """One-shot connectivity check; the connection is never pooled."""
        handle = await self._connect(credentials)
        await handle.logout()

    # -- sweep ---------------------------------------------------------

    async def sweep(self) -> int:
        """Evict idle or dead entries. Entries currently leased are skipped."""
        async with self._lock:
            snapshot = list(self._entries.items())

        evicted = 0
        for key, entry in snapshot:
            async with self._hold_key(key) as key_lock:
                if key_lock.locked():
                    continue
                async with key_lock:
                    idle_seconds = self._clock() - entry.last_used_at
                    if idle_seconds > self.max_idle_seconds:
                        reason = "idle"
                    elif not await entry.handle.is_alive():
                        reason = "unusable"
                    else:
                        continue
                    if await self._discard(key, entry.handle, reason=reason):
                        evicted += 1

        async with self._lock:
            for key in list(self._key_locks):
                if key not in self._key_holders and key not in self._entries:
                    del self._key_locks[key]

        if evicted:
            logger.info(
                "Connection pool sweep finished",
                extra={"evicted": evicted, "remaining": len(self._entries)},
            )
        return evicted

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task and not self._sweep_task.done():
            return
        self._stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        self._sweep_task = loop.create_task(self._run_sweeper())

    async def stop(self) -> None:
        """Stop the periodic sweep and wait for it to exit."""
        if self._stop is not None:
            self._stop.set()
        if self._sweep_task:
            await self._sweep_task
            self._sweep_task = None

    async def close(self) -> None:
        """Stop sweeping and log out of every pooled connection."""
        await self.stop()
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            await entry.handle.logout()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def _run_sweeper(self) -> None:
        assert self._stop is not None
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            try:
                await self.sweep()
            except Exception as exc:  # noqa: BLE001
                logger.error("Connection pool sweep failed", exc_info=exc)

    # -- internals -----------------------------------------------------

    def _create_handle(self, credentials: MailboxCredentials) -> ImapHandle:
        return ImapHandle(credentials, timeout_seconds=self.timeout_seconds)

    async def _connect(self, credentials: MailboxCredentials) -> ImapHandle:
        handle = self._create_handle(credentials)
        start = time.perf_counter()
        try:
            await handle.connect()
        except Exception as exc:
            self.metrics.record_attempt(False, time.perf_counter() - start)
            classified = classify_error(exc, "connect")
            logger.warning(
                "IMAP connection failed",
                extra={"pool_key": credentials.pool_key, "error_code": classified.code},
            )
            raise classified from exc
        self.metrics.record_attempt(True, time.perf_counter() - start)
        handle.add_listener(functools.partial(self._on_handle_event, credentials, handle))
        return handle

    def _on_handle_event(
        self,
        credentials: MailboxCredentials,
        handle: ImapHandle,
        event: str,
        exc: Optional[BaseException],
    ) -> None:
        if event != "error":
            return
        logger.warning(
            "IMAP connection error reported",
            extra={"pool_key": credentials.pool_key, "error_type": type(exc).__name__},
        )
        task = asyncio.get_running_loop().create_task(self.remove(credentials, handle))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @asynccontextmanager
    async def _hold_key(self, key: str) -> AsyncIterator[asyncio.Lock]:
        """Yield the lock for ``key``; it is dropped once unheld and unpooled."""
        async with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._key_locks[key] = lock
            self._key_holders[key] = self._key_holders.get(key, 0) + 1
        try:
            yield lock
        finally:
            async with self._lock:
                self._key_holders[key] -= 1
                if not self._key_holders[key]:
                    del self._key_holders[key]
                    if key not in self._entries:
                        self._key_locks.pop(key, None)

    async def _discard(self, key: str, handle: Optional[ImapHandle], *, reason: str) -> bool:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or (handle is not None and entry.handle is not handle):
                return False
            del self._entries[key]
            if key not in self._key_holders:
                self._key_locks.pop(key, None)

        await entry.handle.logout()
        self.metrics.record_eviction()
        logger.info("Evicted pooled IMAP connection", extra={"pool_key": key, "reason": reason})
        return True


__all__ = [
    "ConnectionMetrics",
    "ConnectionPool",
    "ConnectionState",
    "ImapHandle",
    "PooledConnection",
]
