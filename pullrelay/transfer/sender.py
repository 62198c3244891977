"""
Chunk Sender (client role)

Design Decision: Flow Control
=============================

Options Considered:
1. Read the whole file, queue every chunk on the socket
   - Simplest
   - Memory grows with file size on a slow uplink

2. Read, send, drain, repeat in one loop
   - Bounded
   - Reading and sending can't overlap at all

3. Credit-gated reader task feeding a drain-gated writer
   - Bounded: at most read_ahead + 1 chunks read but not yet flushed
   - Reader waits for a credit before every read, writer returns the
     credit only after drain() says the chunk left the buffer
   - Each half can be tested on its own

Decision: Credit-gated reader + writer (option 3)
- read_ahead=0 is strict send-one-then-read-next pacing
- read_ahead=1 (default) overlaps one disk read with one send

Transfer Flow:
1. DOWNLOAD_REQUEST arrives with a session id
2. Missing file -> ERROR "File not found", no session
3. Stream CHUNK 0..n-1 (base64)
4. COMPLETE with totals, or ERROR on a read fault
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional, Union

import aiofiles

from .messages import Chunk, Complete, Error
from .protocol import Connection
from .session import TransferSession

logger = logging.getLogger(__name__)

# 64KB chunks
DEFAULT_CHUNK_SIZE = 64 * 1024

PROGRESS_INTERVAL = 100

_EOF = object()


class ChunkSender:
    """
    Streams one file over a connection as an ordered chunk sequence.

    One instance serves one transfer at a time; the client runtime
    makes sure a connection never runs two.
    """

    def __init__(self, connection: Connection, owner_id: str = '',
                 chunk_size: int = DEFAULT_CHUNK_SIZE, read_ahead: int = 1,
                 on_finish: Optional[Callable[[str], None]] = None):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if read_ahead < 0:
            raise ValueError(f"read_ahead must not be negative, got {read_ahead}")
        self.connection = connection
        self.owner_id = owner_id
        self.chunk_size = chunk_size
        self.read_ahead = read_ahead
        # Called with the session id once the last message is out
        self.on_finish = on_finish

        # Statistics
        self.chunks_read = 0
        self.chunks_sent = 0

    @property
    def max_outstanding(self) -> int:
        return self.read_ahead + 1

    @property
    def outstanding(self) -> int:
        """Chunks read from disk but not yet flushed to the transport."""
        return self.chunks_read - self.chunks_sent

    async def send_file(self, session_id: str,
                        file_path: Union[str, Path]) -> Optional[TransferSession]:
        """
        Send a file for a download request.

        Returns:
            The finished session, or None if the file does not exist
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            logger.error(f"File not found: {file_path}")
            await self.connection.send(Error(message="File not found",
                                             session_id=session_id))
            self._finished(session_id)
            return None

        session = TransferSession(session_id=session_id, owner_id=self.owner_id,
                                  path=str(file_path))
        try:
            file_size = file_path.stat().st_size
            session.handle = await aiofiles.open(file_path, 'rb')
        except OSError as e:
            logger.error(f"Error opening {file_path}: {e}")
            session.fail(str(e))
            await self._send_error(session_id, str(e))
            self._finished(session_id)
            return session

        logger.info(f"Sending {file_path.name} ({file_size / (1024 * 1024):.2f} MB) "
                    f"for download {session_id}")
        try:
            await self._pump(session, file_size)
        finally:
            await session.release()
        return session

    async def _pump(self, session: TransferSession, file_size: int):
        queue: asyncio.Queue = asyncio.Queue()
        credits = asyncio.Semaphore(self.max_outstanding)
        reader = asyncio.create_task(self._read_blocks(session.handle, queue, credits))
        index = 0

        try:
            while True:
                item = await queue.get()
                if item is _EOF:
                    break
                if isinstance(item, OSError):
                    logger.error(f"Error reading file: {item}")
                    session.fail(str(item))
                    await self._send_error(session.session_id, str(item))
                    return

                await self.connection.send(
                    Chunk.from_bytes(session.session_id, index, item)
                )
                self.chunks_sent += 1
                credits.release()
                session.record_chunk(len(item))
                index += 1

                if index % PROGRESS_INTERVAL == 0:
                    progress = (session.bytes_seen / file_size * 100) if file_size else 100.0
                    logger.info(f"Progress: {progress:.1f}% ({index} chunks sent)")

            await self.connection.send(Complete(
                session_id=session.session_id,
                total_chunks=session.chunks_seen,
                total_bytes=session.bytes_seen,
            ))
            session.complete(session.chunks_seen, session.bytes_seen)
            logger.info(
                f"File transfer complete: {session.chunks_seen} chunks, "
                f"{session.bytes_seen / (1024 * 1024):.2f} MB in "
                f"{session.elapsed_seconds:.2f}s "
                f"({session.throughput_bytes_per_sec / (1024 * 1024):.2f} MB/s)"
            )
        except ConnectionError as e:
            logger.warning(f"Connection lost during download {session.session_id}: {e}")
            if session.is_active:
                session.fail(f"connection lost: {e}")
        finally:
            self._finished(session.session_id)
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def _read_blocks(self, source, queue: asyncio.Queue,
                           credits: asyncio.Semaphore):
        """Read blocks into the queue, one credit per block."""
        try:
            while True:
                await credits.acquire()
                data = await source.read(self.chunk_size)
                if not data:
                    queue.put_nowait(_EOF)
                    return
                self.chunks_read += 1
                queue.put_nowait(data)
        except OSError as e:
            queue.put_nowait(e)

    def _finished(self, session_id: str):
        if self.on_finish is not None:
            self.on_finish(session_id)

    async def _send_error(self, session_id: str, message: str):
        try:
            await self.connection.send(Error(message=message, session_id=session_id))
        except ConnectionError:
            logger.debug(f"Could not report error for {session_id}, connection gone")
