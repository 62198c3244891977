"""
Chunk Assembler (server role)

Writes incoming chunks to one sink file per session, in arrival order.

Design Decision: Integrity Checks
=================================

The wire carries a sequence index on every chunk and the sender's totals
on COMPLETE, but no checksums. Options:
1. Trust the sender: write in arrival order, log totals
2. Check the index against a running counter and cross-check the
   totals against what was written

Decision: check by default (verify=True)
- A gap or a totals mismatch fails the session instead of leaving a
  silently corrupt file marked as complete
- verify=False keeps the trusting behaviour of older servers

Sink Layout:
```
downloads/
└── <client_id>_<session_id>_file_to_download.txt
```
Partial sinks of failed sessions are left on disk.
"""

import logging
import re
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from ..errors import MalformedEnvelope, SequenceGap, SinkWriteError, TotalsMismatch
from .messages import Chunk
from .session import TransferSession

logger = logging.getLogger(__name__)

SINK_SUFFIX = "_file_to_download.txt"

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]')


def sink_name(client_id: str, session_id: str) -> str:
    """Deterministic, filesystem-safe sink file name for a session."""
    safe_client = _UNSAFE_CHARS.sub('_', client_id) or '_'
    safe_session = _UNSAFE_CHARS.sub('_', session_id) or '_'
    return f"{safe_client}_{safe_session}{SINK_SUFFIX}"


class ChunkAssembler:
    """
    Reassembles files from chunk messages.

    The caller resolves the session for a message (connection + session
    id); the assembler only drives that session and its sink. Every
    method leaves a failed session with its sink released.
    """

    def __init__(self, download_dir: Path, progress_interval: int = 100,
                 verify: bool = True):
        if progress_interval <= 0:
            raise ValueError(f"progress_interval must be positive, got {progress_interval}")
        self.download_dir = Path(download_dir)
        self.progress_interval = progress_interval
        self.verify = verify

        # Statistics
        self.files_received = 0
        self.files_failed = 0
        self.total_bytes = 0

    def sink_path(self, session: TransferSession) -> Path:
        return self.download_dir / sink_name(session.owner_id, session.session_id)

    async def _open_sink(self, session: TransferSession):
        await aiofiles.os.makedirs(self.download_dir, exist_ok=True)
        path = self.sink_path(session)
        session.path = str(path)
        session.handle = await aiofiles.open(path, 'wb')
        logger.info(f"Starting download from {session.owner_id} to {path.name}")

    async def write_chunk(self, session: TransferSession, chunk: Chunk) -> bool:
        """
        Append one chunk to the session's sink.

        Returns:
            True if written, False if the session failed (now or before)
        """
        if session.is_terminal:
            logger.debug(f"Ignoring chunk {chunk.sequence_index} for finished "
                         f"download {session.session_id}")
            return False

        if self.verify and chunk.sequence_index != session.chunks_seen:
            gap = SequenceGap(session.chunks_seen, chunk.sequence_index)
            await self._fail(session, str(gap))
            return False

        try:
            data = chunk.decode_payload()
            if session.handle is None:
                await self._open_sink(session)
                if session.is_terminal:
                    # abandoned while the sink was opening
                    await session.release()
                    return False
            await session.handle.write(data)
        except (MalformedEnvelope, OSError) as e:
            error = SinkWriteError(f"Could not write chunk {chunk.sequence_index}: {e}")
            await self._fail(session, str(error))
            return False

        if session.is_terminal:
            logger.debug(f"Download {session.session_id} ended while chunk "
                         f"{chunk.sequence_index} was being written")
            return False

        session.record_chunk(len(data))
        if session.chunks_seen % self.progress_interval == 0:
            logger.info(f"Received {session.chunks_seen} chunks from {session.owner_id}")
        return True

    async def complete(self, session: TransferSession, total_chunks: int,
                       total_bytes: int) -> bool:
        """
        Finalize a session on the sender's COMPLETE message.

        Returns:
            True if the session ended COMPLETED
        """
        if session.is_terminal:
            return False

        try:
            if session.handle is None:
                # Zero-byte file: no chunk ever opened the sink
                await self._open_sink(session)
            await session.release()
        except OSError as e:
            await self._fail(session, str(SinkWriteError(f"Could not close sink: {e}")))
            return False

        if session.is_terminal:
            return False

        if self.verify and (total_chunks != session.chunks_seen
                            or total_bytes != session.bytes_seen):
            mismatch = TotalsMismatch(
                f"Sender reported {total_chunks} chunks / {total_bytes} bytes, "
                f"received {session.chunks_seen} chunks / {session.bytes_seen} bytes"
            )
            await self._fail(session, str(mismatch))
            return False

        session.complete(total_chunks, total_bytes)
        self.files_received += 1
        self.total_bytes += session.bytes_seen

        duration = session.elapsed_seconds
        size_mb = total_bytes / (1024 * 1024)
        speed = size_mb / duration if duration > 0 else 0.0
        logger.info(f"Download complete from {session.owner_id}:")
        logger.info(f"  - File: {session.path}")
        logger.info(f"  - Size: {size_mb:.2f} MB")
        logger.info(f"  - Chunks: {total_chunks}")
        logger.info(f"  - Duration: {duration:.2f}s")
        logger.info(f"  - Speed: {speed:.2f} MB/s")
        return True

    async def fail(self, session: TransferSession, message: str):
        """The sender reported an error for this session."""
        logger.error(f"Error from client {session.owner_id} "
                     f"(download {session.session_id}): {message}")
        if session.is_active:
            await self._fail(session, message)

    async def abandon(self, session: TransferSession, reason: str):
        """Drop a session whose connection went away or went quiet."""
        if session.is_active:
            logger.warning(f"Abandoning download {session.session_id} "
                           f"from {session.owner_id}: {reason}")
            session.fail(reason)
            self.files_failed += 1
        await session.release()

    async def _fail(self, session: TransferSession, reason: str):
        if session.is_terminal:
            # someone else already ended it
            await session.release()
            return
        logger.error(f"Download {session.session_id} from {session.owner_id} failed: {reason}")
        session.fail(reason)
        self.files_failed += 1
        await session.release()

    def get_stats(self) -> dict:
        """Get assembler statistics."""
        return {
            'files_received': self.files_received,
            'files_failed': self.files_failed,
            'total_bytes': self.total_bytes,
            'download_dir': str(self.download_dir),
        }
