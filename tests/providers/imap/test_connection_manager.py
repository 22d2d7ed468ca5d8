"""Tests for the IMAP connection pool."""

from __future__ import annotations

import asyncio

import pytest
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError

import mailgate.providers.imap.connection_manager as cm
from mailgate.errors import AuthenticationError, NetworkError
from mailgate.providers.imap.connection_manager import (
    ConnectionMetrics,
    ConnectionPool,
    ConnectionState,
    ImapHandle,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_connection_metrics_tracks_average() -> None:
    metrics = ConnectionMetrics()
    metrics.record_attempt(True, 1.0)
    metrics.record_attempt(True, 3.0)
    metrics.record_attempt(False, 10.0)

    assert metrics.total_connections == 3
    assert metrics.failed_connections == 1
    assert metrics.average_connection_time == pytest.approx(2.0)


@pytest.mark.asyncio()
async def test_handle_connects_over_tls_with_uids(imap_server, credentials) -> None:
    handle = ImapHandle(credentials, timeout_seconds=5)

    await handle.connect()

    client = imap_server.clients[0]
    assert handle.state == ConnectionState.READY
    assert handle.usable
    assert client.ssl is True
    assert client.use_uid is True
    assert client.host == "imap.domain.test"
    assert await handle.is_alive()

    await handle.logout()
    assert client.logged_out
    assert not handle.usable


@pytest.mark.asyncio()
async def test_acquire_reuses_live_connection(imap_server, credentials) -> None:
    pool = ConnectionPool(timeout_seconds=5)

    first = await pool.acquire(credentials)
    second = await pool.acquire(credentials)

    assert first is second
    assert len(pool) == 1
    assert credentials in pool
    assert imap_server.logins == 1
    assert pool.metrics.reused_connections == 1
    await pool.close()


@pytest.mark.asyncio()
async def test_acquire_replaces_dead_connection(imap_server, credentials) -> None:
    pool = ConnectionPool(timeout_seconds=5)
    first = await pool.acquire(credentials)
    first.state = ConnectionState.FAILED

    second = await pool.acquire(credentials)

    assert second is not first
    assert imap_server.clients[0].logged_out
    assert len(pool) == 1
    await pool.close()


@pytest.mark.asyncio()
async def test_failed_login_never_populates_pool(imap_server, credentials) -> None:
    imap_server.password = "something-else"
    pool = ConnectionPool(timeout_seconds=5)

    with pytest.raises(AuthenticationError):
        await pool.acquire(credentials)

    assert len(pool) == 0
    assert imap_server.clients[0].shut_down
    assert pool.metrics.failed_connections == 1


@pytest.mark.asyncio()
async def test_unreachable_server_is_network_error(monkeypatch, credentials) -> None:
    def refuse(**_kwargs):
        raise ConnectionRefusedError("[Errno 111] Connection refused")

    monkeypatch.setattr(cm, "IMAPClient", refuse)
    pool = ConnectionPool(timeout_seconds=5)

    with pytest.raises(NetworkError) as excinfo:
        await pool.acquire(credentials)

    assert excinfo.value.retryable
    assert isinstance(excinfo.value.__cause__, ConnectionRefusedError)
    assert len(pool) == 0


@pytest.mark.asyncio()
async def test_late_handshake_does_not_leak_client(imap_server, credentials) -> None:
    handle = ImapHandle(credentials, timeout_seconds=5)
    open_connection = handle._open

    def login_then_time_out() -> None:
        open_connection()
        raise TimeoutError("handshake deadline passed")

    handle._open = login_then_time_out

    with pytest.raises(TimeoutError):
        await handle.connect()

    assert handle.client is None
    assert handle.state == ConnectionState.FAILED
    assert imap_server.clients[0].logged_out


@pytest.mark.asyncio()
async def test_failed_leases_leave_no_key_locks(imap_server, credentials) -> None:
    imap_server.password = "something-else"
    pool = ConnectionPool(timeout_seconds=5)

    for index in range(50):
        forged = credentials.model_copy(update={"username": f"user{index}@domain.test"})
        with pytest.raises(AuthenticationError):
            async with pool.lease(forged):
                pass

    assert len(pool) == 0
    assert pool._key_locks == {}
    assert pool._key_holders == {}


@pytest.mark.asyncio()
async def test_key_lock_lives_as_long_as_its_entry(imap_server, credentials) -> None:
    clock = FakeClock()
    pool = ConnectionPool(timeout_seconds=5, max_idle_seconds=60, clock=clock)

    async with pool.lease(credentials):
        pass
    assert list(pool._key_locks) == [credentials.pool_key]

    clock.now += 61
    assert await pool.sweep() == 1

    assert pool._key_locks == {}
    await pool.close()


@pytest.mark.asyncio()
async def test_release_refreshes_last_used(imap_server, credentials) -> None:
    clock = FakeClock()
    pool = ConnectionPool(timeout_seconds=5, clock=clock)
    handle = await pool.acquire(credentials)

    clock.now += 120
    await pool.release(credentials, handle)

    assert pool._entries[credentials.pool_key].last_used_at == clock.now
    assert not imap_server.clients[0].logged_out
    await pool.close()


@pytest.mark.asyncio()
async def test_remove_only_drops_matching_handle(imap_server, credentials) -> None:
    pool = ConnectionPool(timeout_seconds=5)
    handle = await pool.acquire(credentials)
    stranger = ImapHandle(credentials)

    assert not await pool.remove(credentials, stranger)
    assert len(pool) == 1

    assert await pool.remove(credentials, handle)
    assert len(pool) == 0
    assert imap_server.clients[0].logged_out


@pytest.mark.asyncio()
async def test_sweep_evicts_idle_connections(imap_server, credentials) -> None:
    clock = FakeClock()
    pool = ConnectionPool(timeout_seconds=5, max_idle_seconds=600, clock=clock)
    handle = await pool.acquire(credentials)

    clock.now += 300
    assert await pool.sweep() == 0
    assert len(pool) == 1

    clock.now += 301
    assert await pool.sweep() == 1

    assert len(pool) == 0
    assert pool.keys() == []
    assert imap_server.clients[0].logged_out
    assert handle.client is None
    assert pool.metrics.evicted_connections == 1


@pytest.mark.asyncio()
async def test_sweep_evicts_dead_connections(imap_server, credentials) -> None:
    pool = ConnectionPool(timeout_seconds=5)
    await pool.acquire(credentials)

    imap_server.connection_dropped = True
    assert await pool.sweep() == 1
    assert len(pool) == 0
    await pool.close()


@pytest.mark.asyncio()
async def test_sweep_skips_leased_connections(imap_server, credentials) -> None:
    clock = FakeClock()
    pool = ConnectionPool(timeout_seconds=5, max_idle_seconds=600, clock=clock)

    async with pool.lease(credentials):
        clock.now += 3600
        assert await pool.sweep() == 0
        assert len(pool) == 1

    await pool.close()
    assert len(pool) == 0


@pytest.mark.asyncio()
async def test_lease_removes_connection_on_transport_error(imap_server, credentials) -> None:
    pool = ConnectionPool(timeout_seconds=5)

    with pytest.raises(IMAPClientAbortError):
        async with pool.lease(credentials) as handle:
            imap_server.connection_dropped = True
            await handle.search(["ALL"])

    assert len(pool) == 0
    await pool.close()


@pytest.mark.asyncio()
async def test_lease_keeps_connection_on_protocol_error(imap_server, credentials) -> None:
    pool = ConnectionPool(timeout_seconds=5)

    with pytest.raises(IMAPClientError):
        async with pool.lease(credentials) as handle:
            await handle.mailbox_open("Missing")

    assert len(pool) == 1
    await pool.close()


@pytest.mark.asyncio()
async def test_lease_serializes_same_key(imap_server, credentials) -> None:
    pool = ConnectionPool(timeout_seconds=5)
    active = 0
    peak = 0

    async def use() -> None:
        nonlocal active, peak
        async with pool.lease(credentials) as handle:
            active += 1
            peak = max(peak, active)
            await handle.search(["ALL"])
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(use() for _ in range(5)))

    assert peak == 1
    assert imap_server.logins == 1
    await pool.close()


@pytest.mark.asyncio()
async def test_verify_is_not_pooled(imap_server, credentials) -> None:
    pool = ConnectionPool(timeout_seconds=5)

    await pool.verify(credentials)

    assert len(pool) == 0
    assert imap_server.clients[0].logged_in
    assert imap_server.clients[0].logged_out


@pytest.mark.asyncio()
async def test_background_sweep_runs_and_stops(imap_server, credentials) -> None:
    clock = FakeClock()
    pool = ConnectionPool(timeout_seconds=5, max_idle_seconds=1, sweep_interval_seconds=0.01, clock=clock)
    await pool.acquire(credentials)
    clock.now += 10

    pool.start()
    assert pool.running
    for _ in range(100):
        if len(pool) == 0:
            break
        await asyncio.sleep(0.01)

    await pool.stop()
    assert not pool.running
    assert len(pool) == 0
