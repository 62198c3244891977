import asyncio
import os

import pytest

from pullrelay.transfer import receiver as receiver_module
from pullrelay.transfer.messages import Chunk
from pullrelay.transfer.receiver import SINK_SUFFIX, ChunkAssembler, sink_name
from pullrelay.transfer.session import SessionState, TransferSession


def _session(session_id: str = "download_1") -> TransferSession:
    return TransferSession(session_id=session_id, owner_id="restaurant-1")


def _chunks(data: bytes, size: int, session_id: str = "download_1"):
    return [
        Chunk.from_bytes(session_id, i, data[offset:offset + size])
        for i, offset in enumerate(range(0, len(data), size))
    ]


def test_chunks_are_written_in_order_and_completed(tmp_path):
    payload = os.urandom(5000)

    async def scenario():
        assembler = ChunkAssembler(tmp_path / "downloads")
        session = _session()
        for chunk in _chunks(payload, 1024):
            assert await assembler.write_chunk(session, chunk)
        assert session.state is SessionState.IN_PROGRESS

        assert await assembler.complete(session, total_chunks=5, total_bytes=5000)
        return session

    session = asyncio.run(scenario())
    sink = tmp_path / "downloads" / f"restaurant-1_download_1{SINK_SUFFIX}"
    assert session.state is SessionState.COMPLETED
    assert session.path == str(sink)
    assert session.handle is None
    assert sink.read_bytes() == payload


def test_zero_chunk_completion_creates_empty_sink(tmp_path):
    async def scenario():
        assembler = ChunkAssembler(tmp_path)
        session = _session()
        assert await assembler.complete(session, total_chunks=0, total_bytes=0)
        return session

    session = asyncio.run(scenario())
    assert session.state is SessionState.COMPLETED
    assert (tmp_path / sink_name("restaurant-1", "download_1")).read_bytes() == b""


def test_sequence_gap_fails_session(tmp_path):
    async def scenario():
        assembler = ChunkAssembler(tmp_path)
        session = _session()
        await assembler.write_chunk(session, Chunk.from_bytes("download_1", 0, b"a"))
        ok = await assembler.write_chunk(session, Chunk.from_bytes("download_1", 2, b"c"))
        return ok, session, assembler

    ok, session, assembler = asyncio.run(scenario())
    assert not ok
    assert session.state is SessionState.FAILED
    assert "Expected chunk 1, got 2" in session.error
    assert session.handle is None
    assert assembler.get_stats()["files_failed"] == 1


def test_trusting_mode_accepts_gaps_and_totals(tmp_path):
    async def scenario():
        assembler = ChunkAssembler(tmp_path, verify=False)
        session = _session()
        await assembler.write_chunk(session, Chunk.from_bytes("download_1", 0, b"a"))
        await assembler.write_chunk(session, Chunk.from_bytes("download_1", 5, b"b"))
        assert await assembler.complete(session, total_chunks=99, total_bytes=99)
        return session

    session = asyncio.run(scenario())
    assert session.state is SessionState.COMPLETED
    assert session.expected_chunks == 99


def test_totals_mismatch_fails_session(tmp_path):
    async def scenario():
        assembler = ChunkAssembler(tmp_path)
        session = _session()
        await assembler.write_chunk(session, Chunk.from_bytes("download_1", 0, b"abc"))
        ok = await assembler.complete(session, total_chunks=1, total_bytes=4)
        return ok, session

    ok, session = asyncio.run(scenario())
    assert not ok
    assert session.state is SessionState.FAILED
    assert "received 1 chunks / 3 bytes" in session.error


def test_undecodable_payload_fails_session(tmp_path):
    async def scenario():
        assembler = ChunkAssembler(tmp_path)
        session = _session()
        bad = Chunk(session_id="download_1", sequence_index=0, payload="%%%")
        assert not await assembler.write_chunk(session, bad)
        return session

    session = asyncio.run(scenario())
    assert session.state is SessionState.FAILED
    assert "Could not write chunk 0" in session.error


def test_peer_error_leaves_partial_file(tmp_path):
    async def scenario():
        assembler = ChunkAssembler(tmp_path)
        session = _session()
        await assembler.write_chunk(session, Chunk.from_bytes("download_1", 0, b"partial"))
        await assembler.fail(session, "disk read error")
        # late chunk for the failed session is ignored
        assert not await assembler.write_chunk(session, Chunk.from_bytes("download_1", 1, b"x"))
        assert not await assembler.complete(session, 2, 8)
        return session

    session = asyncio.run(scenario())
    assert session.state is SessionState.FAILED
    assert session.error == "disk read error"
    assert (tmp_path / sink_name("restaurant-1", "download_1")).read_bytes() == b"partial"


def test_abandon_releases_sink(tmp_path):
    async def scenario():
        assembler = ChunkAssembler(tmp_path)
        session = _session()
        await assembler.write_chunk(session, Chunk.from_bytes("download_1", 0, b"abc"))
        assert session.handle is not None
        await assembler.abandon(session, "connection lost")
        return session

    session = asyncio.run(scenario())
    assert session.state is SessionState.FAILED
    assert session.handle is None


def test_sink_name_is_filesystem_safe():
    assert sink_name("restaurant-1", "download_1") == f"restaurant-1_download_1{SINK_SUFFIX}"
    name = sink_name("../../etc/passwd", "download 2")
    assert "/" not in name
    assert name == f".._.._etc_passwd_download_2{SINK_SUFFIX}"


def test_sink_os_error_fails_session(tmp_path):
    blocker = tmp_path / "downloads"
    blocker.write_text("not a directory")

    async def scenario():
        assembler = ChunkAssembler(blocker)
        session = _session()
        ok = await assembler.write_chunk(session, Chunk.from_bytes("download_1", 0, b"abc"))
        return ok, session, assembler

    ok, session, assembler = asyncio.run(scenario())
    assert not ok
    assert session.state is SessionState.FAILED
    assert "Could not write chunk 0" in session.error
    assert session.handle is None
    assert assembler.get_stats()["files_failed"] == 1


class GatedHandle:
    def __init__(self, gate):
        self.gate = gate
        self.closed = False

    async def write(self, data):
        await self.gate.wait()

    async def close(self):
        self.closed = True


def test_session_abandoned_during_write_is_left_alone(tmp_path):
    async def scenario():
        gate = asyncio.Event()
        assembler = ChunkAssembler(tmp_path)
        session = _session()
        handle = GatedHandle(gate)
        session.handle = handle

        write = asyncio.create_task(
            assembler.write_chunk(session, Chunk.from_bytes("download_1", 0, b"abc"))
        )
        await asyncio.sleep(0)
        await assembler.abandon(session, "no activity for 300s")
        gate.set()

        assert await write is False
        assert handle.closed
        return session, assembler

    session, assembler = asyncio.run(scenario())
    assert session.state is SessionState.FAILED
    assert session.error == "no activity for 300s"
    assert session.chunks_seen == 0
    assert assembler.get_stats()["files_failed"] == 1


def test_session_abandoned_while_sink_opens_releases_new_handle(tmp_path, monkeypatch):
    opened = []

    async def scenario():
        gate = asyncio.Event()

        async def gated_open(path, mode='r'):
            await gate.wait()
            handle = GatedHandle(gate)
            opened.append(handle)
            return handle

        monkeypatch.setattr(receiver_module.aiofiles, "open", gated_open)

        assembler = ChunkAssembler(tmp_path)
        session = _session()
        write = asyncio.create_task(
            assembler.write_chunk(session, Chunk.from_bytes("download_1", 0, b"abc"))
        )
        await asyncio.sleep(0.01)
        await assembler.abandon(session, "superseded by a new connection")
        gate.set()

        assert await write is False
        return session

    session = asyncio.run(scenario())
    assert session.state is SessionState.FAILED
    assert session.handle is None
    assert len(opened) == 1 and opened[0].closed


def test_non_positive_progress_interval_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        ChunkAssembler(tmp_path, progress_interval=0)
