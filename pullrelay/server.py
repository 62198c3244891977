"""
Relay Server - Main Controller

Ties the pieces of the server role together:
- Listener accepting persistent client connections
- Registry of connected clients
- Request orchestrator (request_download)
- Chunk assembler writing downloads to disk
- Watchdog expiring sessions that went quiet
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional

from .config import ServerConfig
from .errors import ClientNotConnected, MalformedEnvelope
from .registry import ConnectionRegistry, RegistryEntry
from .transfer.messages import (
    Chunk, Complete, DownloadRequest, Envelope, Error, Register,
)
from .transfer.protocol import Connection, ConnectionListener, FrameTooLarge
from .transfer.receiver import ChunkAssembler
from .transfer.session import TransferSession, generate_session_id

logger = logging.getLogger(__name__)

# Finished sessions kept for status queries
SESSION_HISTORY = 1000


class RelayServer:
    """
    The central server.

    Clients connect and register; request_download() later asks one of
    them for its file. The request returns as soon as it is sent, the
    transfer itself is tracked by the returned session.
    """

    def __init__(self, config: ServerConfig = None):
        self.config = config or ServerConfig()
        self.registry = ConnectionRegistry()
        self.assembler = ChunkAssembler(
            download_dir=self.config.download_dir,
            progress_interval=self.config.progress_interval,
            verify=self.config.verify_transfers,
        )
        self.listener = ConnectionListener(
            self._serve_connection,
            host=self.config.host,
            port=self.config.port,
        )

        self._sessions: Dict[str, TransferSession] = OrderedDict()
        self._watchdog: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def port(self) -> int:
        return self.listener.bound_port

    async def start(self):
        """Start accepting client connections."""
        if self._running:
            return

        self.config.download_dir.mkdir(parents=True, exist_ok=True)
        await self.listener.start()
        self._running = True

        if self.config.session_timeout > 0:
            self._watchdog = asyncio.create_task(self._watch_sessions())

        logger.info("Relay server started")
        logger.info(f"  Port: {self.port}")
        logger.info(f"  Download Dir: {self.config.download_dir}")

    async def stop(self):
        """Stop the server and drop every connection."""
        if not self._running:
            return

        logger.info("Stopping relay server...")
        self._running = False

        if self._watchdog:
            self._watchdog.cancel()
            try:
                await self._watchdog
            except asyncio.CancelledError:
                pass
            self._watchdog = None

        await self.listener.stop()
        for entry in self.registry.snapshot():
            await entry.connection.close()
            await self.registry.unregister(entry.connection)

        logger.info("Relay server stopped")

    # === Orchestrator ===

    async def request_download(self, client_id: str) -> TransferSession:
        """
        Ask a connected client to send its file.

        Returns:
            The new PENDING session; the transfer runs in the background

        Raises:
            ClientNotConnected: no such client is registered
            DownloadInProgress: the client is already sending a file
        """
        session = TransferSession(session_id=generate_session_id(), owner_id=client_id)
        entry = await self.registry.attach_session(client_id, session)
        self._remember(session)

        logger.info(f"Requesting file download from client {client_id} "
                    f"(download {session.session_id})")
        try:
            await entry.connection.send(DownloadRequest(session_id=session.session_id))
        except ConnectionError as e:
            session.fail(f"request not delivered: {e}")
            await self.registry.detach_session(client_id, session)
            raise ClientNotConnected(client_id) from e

        return session

    def get_session(self, session_id: str) -> Optional[TransferSession]:
        """Look up a download by id (recent ones only)."""
        return self._sessions.get(session_id)

    def list_clients(self) -> List[RegistryEntry]:
        return self.registry.snapshot()

    def _remember(self, session: TransferSession):
        self._sessions[session.session_id] = session
        while len(self._sessions) > SESSION_HISTORY:
            oldest_id = next(iter(self._sessions))
            if self._sessions[oldest_id].is_active:
                break
            del self._sessions[oldest_id]

    # === Connection handling ===

    async def _serve_connection(self, connection: Connection):
        """Read and dispatch frames until the client goes away."""
        client_id: Optional[str] = None
        try:
            while self._running:
                try:
                    message = await connection.receive()
                except MalformedEnvelope as e:
                    logger.warning(f"Discarding malformed message from "
                                   f"{client_id or connection.remote_address}: {e}")
                    continue
                except FrameTooLarge as e:
                    logger.warning(f"Closing connection from "
                                   f"{client_id or connection.remote_address}: {e}")
                    break

                if message is None:
                    break

                if isinstance(message, Register):
                    await self.registry.register(connection, message.client_id)
                    client_id = message.client_id
                    continue

                entry = self._entry_for(connection, client_id)
                if entry is None:
                    logger.warning(f"Ignoring {message.type.value} from unregistered "
                                   f"connection {connection.remote_address}")
                    continue

                await self._dispatch(entry, message)
        finally:
            await self.registry.unregister(connection)

    def _entry_for(self, connection: Connection,
                   client_id: Optional[str]) -> Optional[RegistryEntry]:
        if client_id is None:
            return None
        entry = self.registry.lookup(client_id)
        if entry is None or entry.connection is not connection:
            return None
        return entry

    def _current_session(self, entry: RegistryEntry,
                         session_id: Optional[str]) -> Optional[TransferSession]:
        """The entry's active session, if the message refers to it."""
        session = entry.active_session
        if session is None or session.session_id != session_id:
            logger.debug(f"Discarding message for unknown or stale download "
                         f"{session_id} from {entry.client_id}")
            return None
        return session

    async def _dispatch(self, entry: RegistryEntry, message: Envelope):
        if isinstance(message, Chunk):
            session = self._current_session(entry, message.session_id)
            if session is not None:
                await self.assembler.write_chunk(session, message)
                if session.is_terminal:
                    await self.registry.detach_session(entry.client_id, session)

        elif isinstance(message, Complete):
            session = self._current_session(entry, message.session_id)
            if session is not None:
                await self.assembler.complete(session, message.total_chunks,
                                              message.total_bytes)
                await self.registry.detach_session(entry.client_id, session)

        elif isinstance(message, Error):
            session = self._current_session(entry, message.session_id)
            if session is None:
                logger.error(f"Error from client {entry.client_id}: {message.message}")
                return
            await self.assembler.fail(session, message.message)
            await self.registry.detach_session(entry.client_id, session)

        else:
            logger.warning(f"Unexpected {message.type.value} message from {entry.client_id}")

    # === Timeouts ===

    async def _watch_sessions(self):
        timeout = self.config.session_timeout
        interval = min(timeout / 4, 5.0)
        while True:
            await asyncio.sleep(interval)
            await self.expire_idle_sessions()

    async def expire_idle_sessions(self) -> int:
        """Abandon active sessions with no traffic for session_timeout seconds."""
        timeout = self.config.session_timeout
        if timeout <= 0:
            return 0

        expired = 0
        for entry in self.registry.snapshot():
            session = entry.active_session
            if session is None or not session.is_active:
                continue
            if session.idle_seconds() > timeout:
                await self.assembler.abandon(session, f"no activity for {timeout:.0f}s")
                await self.registry.detach_session(entry.client_id, session)
                expired += 1
        return expired

    # === Stats ===

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            'running': self._running,
            'port': self.port,
            'connected_clients': len(self.registry),
            'active_downloads': sum(
                1 for e in self.registry.snapshot() if e.has_active_download
            ),
            'assembler': self.assembler.get_stats(),
        }
