"""
Connection Registry

Server-side map from client id to its live connection and the download
that is currently running on it, if any.

All mutation goes through the registry's lock, so replacing a client's
connection, attaching a session and dropping a connection are atomic with
respect to each other. Reads of a single entry never block.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .errors import ClientNotConnected, DownloadInProgress
from .transfer.messages import Registered
from .transfer.protocol import Connection
from .transfer.session import TransferSession

logger = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    """One registered client."""
    client_id: str
    connection: Connection
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    active_session: Optional[TransferSession] = None

    @property
    def has_active_download(self) -> bool:
        return self.active_session is not None and self.active_session.is_active

    def to_dict(self) -> dict:
        return {
            'id': self.client_id,
            'connectedAt': self.registered_at.isoformat(),
            'hasActiveDownload': self.has_active_download,
        }


class ConnectionRegistry:
    """
    Registered clients, keyed by client id.

    Last registration wins: a client id that registers again replaces the
    old entry, and a connection that registers under a new id drops its
    old one.
    """

    def __init__(self):
        self._entries: Dict[str, RegistryEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._entries

    async def register(self, connection: Connection,
                       client_id: str) -> Optional[RegistryEntry]:
        """
        Register a connection under a client id and acknowledge it.

        Returns:
            The entry that was replaced, if any. Its active session has
            already been abandoned.
        """
        async with self._lock:
            for other_id, other in list(self._entries.items()):
                if other.connection is connection and other_id != client_id:
                    del self._entries[other_id]
                    await self._abandon(other, "client re-registered")

            replaced = self._entries.get(client_id)
            self._entries[client_id] = RegistryEntry(client_id=client_id,
                                                     connection=connection)
            if replaced is not None:
                await self._abandon(replaced, "superseded by a new connection")

        if replaced is not None:
            logger.warning(f"Client {client_id} re-registered, replacing previous connection")
        logger.info(f"Client registered: {client_id}")

        await connection.send(Registered(client_id=client_id))
        return replaced

    def lookup(self, client_id: str) -> Optional[RegistryEntry]:
        """Get the entry for a client, or None if it is not connected."""
        return self._entries.get(client_id)

    def find_by_connection(self, connection: Connection) -> Optional[RegistryEntry]:
        for entry in self._entries.values():
            if entry.connection is connection:
                return entry
        return None

    async def unregister(self, connection: Connection) -> Optional[RegistryEntry]:
        """
        Remove whatever entry belongs to a closed connection.

        A connection whose client id has since been taken over by a newer
        connection matches nothing, and the newer entry is left alone.
        """
        async with self._lock:
            entry = self.find_by_connection(connection)
            if entry is None:
                return None
            del self._entries[entry.client_id]
            await self._abandon(entry, "connection lost")

        logger.info(f"Client {entry.client_id} disconnected")
        return entry

    async def attach_session(self, client_id: str, session: TransferSession) -> RegistryEntry:
        """
        Make a session the client's active download.

        Raises:
            ClientNotConnected: the client is not registered
            DownloadInProgress: the client is already busy
        """
        async with self._lock:
            entry = self._entries.get(client_id)
            if entry is None:
                raise ClientNotConnected(client_id)
            if entry.has_active_download:
                raise DownloadInProgress(client_id, entry.active_session.session_id)
            entry.active_session = session
            return entry

    async def detach_session(self, client_id: str, session: TransferSession) -> bool:
        """Clear the client's active download if it is still this session."""
        async with self._lock:
            entry = self._entries.get(client_id)
            if entry is None or entry.active_session is not session:
                return False
            entry.active_session = None
            return True

    def snapshot(self) -> List[RegistryEntry]:
        """Entries ordered by registration time."""
        return sorted(self._entries.values(), key=lambda e: e.registered_at)

    @staticmethod
    async def _abandon(entry: RegistryEntry, reason: str):
        session = entry.active_session
        if session is None:
            return
        if session.is_active:
            logger.warning(f"Abandoning download {session.session_id} "
                           f"from {entry.client_id}: {reason}")
            session.fail(reason)
        await session.release()
