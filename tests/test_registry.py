import asyncio

import pytest

from conftest import FakeConnection
from pullrelay.errors import ClientNotConnected, DownloadInProgress
from pullrelay.registry import ConnectionRegistry
from pullrelay.transfer.messages import Registered
from pullrelay.transfer.session import SessionState, TransferSession


class Handle:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


def test_register_acknowledges_and_lookup_finds_client():
    async def scenario():
        registry = ConnectionRegistry()
        conn = FakeConnection()
        replaced = await registry.register(conn, "restaurant-1")

        assert replaced is None
        assert conn.sent == [Registered("restaurant-1")]
        entry = registry.lookup("restaurant-1")
        assert entry is not None
        assert entry.connection is conn
        assert not entry.has_active_download
        assert len(registry) == 1

    asyncio.run(scenario())


def test_unregister_removes_entry():
    async def scenario():
        registry = ConnectionRegistry()
        conn = FakeConnection()
        await registry.register(conn, "restaurant-1")

        removed = await registry.unregister(conn)

        assert removed.client_id == "restaurant-1"
        assert registry.lookup("restaurant-1") is None
        assert "restaurant-1" not in registry
        assert await registry.unregister(conn) is None

    asyncio.run(scenario())


def test_unregister_abandons_active_session_and_releases_sink():
    async def scenario():
        registry = ConnectionRegistry()
        conn = FakeConnection()
        await registry.register(conn, "restaurant-1")
        session = TransferSession(session_id="download_1", owner_id="restaurant-1")
        handle = Handle()
        session.handle = handle
        session.record_chunk(10)
        await registry.attach_session("restaurant-1", session)

        await registry.unregister(conn)

        assert session.state is SessionState.FAILED
        assert session.error == "connection lost"
        assert handle.closed

    asyncio.run(scenario())


def test_reregistration_replaces_entry_and_old_close_is_harmless():
    async def scenario():
        registry = ConnectionRegistry()
        old, new = FakeConnection(), FakeConnection()
        await registry.register(old, "restaurant-1")
        session = TransferSession(session_id="download_1", owner_id="restaurant-1")
        await registry.attach_session("restaurant-1", session)

        replaced = await registry.register(new, "restaurant-1")

        assert replaced.connection is old
        assert session.state is SessionState.FAILED
        assert registry.lookup("restaurant-1").connection is new

        # the old socket closing later must not drop the new registration
        assert await registry.unregister(old) is None
        assert registry.lookup("restaurant-1").connection is new

    asyncio.run(scenario())


def test_connection_registering_under_new_id_keeps_only_latest():
    async def scenario():
        registry = ConnectionRegistry()
        conn = FakeConnection()
        await registry.register(conn, "first-name")
        await registry.register(conn, "second-name")

        assert registry.lookup("first-name") is None
        assert registry.lookup("second-name").connection is conn
        assert len(registry) == 1

    asyncio.run(scenario())


def test_attach_session_rejects_unknown_and_busy_clients():
    async def scenario():
        registry = ConnectionRegistry()
        await registry.register(FakeConnection(), "restaurant-1")
        first = TransferSession(session_id="download_1", owner_id="restaurant-1")
        second = TransferSession(session_id="download_2", owner_id="restaurant-1")

        with pytest.raises(ClientNotConnected):
            await registry.attach_session("ghost", first)

        await registry.attach_session("restaurant-1", first)
        with pytest.raises(DownloadInProgress) as excinfo:
            await registry.attach_session("restaurant-1", second)
        assert excinfo.value.session_id == "download_1"

        # a finished session frees the slot even before detach
        first.complete(0, 0)
        await registry.attach_session("restaurant-1", second)
        assert registry.lookup("restaurant-1").active_session is second

    asyncio.run(scenario())


def test_detach_only_clears_matching_session():
    async def scenario():
        registry = ConnectionRegistry()
        await registry.register(FakeConnection(), "restaurant-1")
        session = TransferSession(session_id="download_1", owner_id="restaurant-1")
        other = TransferSession(session_id="download_2", owner_id="restaurant-1")
        await registry.attach_session("restaurant-1", session)

        assert not await registry.detach_session("restaurant-1", other)
        assert registry.lookup("restaurant-1").active_session is session
        assert await registry.detach_session("restaurant-1", session)
        assert registry.lookup("restaurant-1").active_session is None

    asyncio.run(scenario())


def test_snapshot_is_ordered_by_registration_time():
    async def scenario():
        registry = ConnectionRegistry()
        await registry.register(FakeConnection(), "restaurant-2")
        await asyncio.sleep(0.01)
        await registry.register(FakeConnection(), "restaurant-1")

        snapshot = registry.snapshot()
        assert [e.client_id for e in snapshot] == ["restaurant-2", "restaurant-1"]
        assert snapshot[0].registered_at <= snapshot[1].registered_at
        assert snapshot[0].to_dict()["hasActiveDownload"] is False

    asyncio.run(scenario())
