"""
Transfer Session

Bookkeeping for one file transfer, end to end. The same object is used
by the client while it sends and by the server while it receives.

State machine:
```
PENDING ──► IN_PROGRESS ──► COMPLETED
   │             │
   │             └────────► FAILED
   ├──────────────────────► COMPLETED   (zero-byte file)
   └──────────────────────► FAILED
```
Terminal states are final and a session is never reused.
"""

import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import InvalidTransition

logger = logging.getLogger(__name__)


class SessionState(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    SessionState.PENDING: {SessionState.IN_PROGRESS, SessionState.COMPLETED,
                           SessionState.FAILED},
    SessionState.IN_PROGRESS: {SessionState.COMPLETED, SessionState.FAILED},
    SessionState.COMPLETED: set(),
    SessionState.FAILED: set(),
}

ACTIVE_STATES = frozenset({SessionState.PENDING, SessionState.IN_PROGRESS})


def generate_session_id() -> str:
    """Timestamp plus random suffix; unique in practice, not guaranteed."""
    return f"download_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class TransferSession:
    """
    State of one download.

    ``handle`` is the open sink (receiver) or source (sender) file, if any.
    Counters track what actually crossed this end of the connection;
    ``expected_*`` hold what the peer claimed in its COMPLETE message.
    """
    session_id: str
    owner_id: str
    state: SessionState = SessionState.PENDING
    path: Optional[str] = None
    handle: Any = None

    chunks_seen: int = 0
    bytes_seen: int = 0
    expected_chunks: Optional[int] = None
    expected_bytes: Optional[int] = None
    error: Optional[str] = None

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    last_activity: float = field(default_factory=time.monotonic)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active

    @property
    def elapsed_seconds(self) -> float:
        """Time from first data to finish (or now, while running)."""
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return max(end - self.started_at, 0.0)

    @property
    def throughput_bytes_per_sec(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0.0
        return self.bytes_seen / elapsed

    def idle_seconds(self, now: Optional[float] = None) -> float:
        now = time.monotonic() if now is None else now
        return now - self.last_activity

    def _move(self, new_state: SessionState):
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Session {self.session_id}: {self.state.value} -> {new_state.value}"
            )
        logger.debug(f"Session {self.session_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def touch(self):
        self.last_activity = time.monotonic()

    def start(self):
        """First chunk seen."""
        self._move(SessionState.IN_PROGRESS)
        self.started_at = time.monotonic()
        self.touch()

    def record_chunk(self, size: int):
        """Account for one chunk sent or received."""
        if self.state is SessionState.PENDING:
            self.start()
        elif self.state is not SessionState.IN_PROGRESS:
            raise InvalidTransition(
                f"Session {self.session_id} is {self.state.value}, cannot take chunks"
            )
        self.chunks_seen += 1
        self.bytes_seen += size
        self.touch()

    def complete(self, total_chunks: Optional[int] = None,
                 total_bytes: Optional[int] = None):
        self._move(SessionState.COMPLETED)
        self.expected_chunks = total_chunks
        self.expected_bytes = total_bytes
        self._finish()

    def fail(self, reason: str):
        self._move(SessionState.FAILED)
        self.error = reason
        self._finish()

    def _finish(self):
        now = time.monotonic()
        if self.started_at is None:
            self.started_at = now
        self.finished_at = now
        self.touch()

    async def release(self):
        """Close the attached file handle, if any."""
        handle, self.handle = self.handle, None
        if handle is not None:
            try:
                await handle.close()
            except OSError as e:
                logger.warning(f"Error closing file for session {self.session_id}: {e}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'downloadId': self.session_id,
            'clientId': self.owner_id,
            'state': self.state.value,
            'file': os.path.basename(self.path) if self.path else None,
            'chunks': self.chunks_seen,
            'bytes': self.bytes_seen,
            'expectedChunks': self.expected_chunks,
            'expectedBytes': self.expected_bytes,
            'createdAt': self.created_at.isoformat(),
            'elapsedSeconds': round(self.elapsed_seconds, 3),
            'bytesPerSecond': round(self.throughput_bytes_per_sec, 1),
            'error': self.error,
        }
