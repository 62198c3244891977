"""
Relay Client

Runs on the private-network side. Dials out to the relay server,
registers under its client id and waits; when the server asks for the
file it streams it back over the same connection. Reconnects on its own
whenever the connection drops.
"""

import asyncio
import logging
from typing import Optional, Set

from .config import ClientConfig
from .errors import MalformedEnvelope
from .transfer.messages import DownloadRequest, Error, Register, Registered
from .transfer.protocol import Connection, open_connection
from .transfer.sender import ChunkSender
from .transfer.session import TransferSession

logger = logging.getLogger(__name__)


class RelayClient:
    """
    One client process: a single connection, at most one transfer at a time.

    A DOWNLOAD_REQUEST that arrives while a transfer is running is
    answered with an ERROR naming the running download.
    """

    def __init__(self, config: ClientConfig = None):
        self.config = config or ClientConfig()
        self.connection: Optional[Connection] = None
        self.registered = asyncio.Event()

        # Tasks still winding down may outlive their slot in _active_id
        self._transfers: Set[asyncio.Task] = set()
        self._active_id: Optional[str] = None
        self._stopping = False

        # Statistics
        self.sessions: list = []

    @property
    def client_id(self) -> str:
        return self.config.client_id

    @property
    def is_busy(self) -> bool:
        return self._active_id is not None

    async def run(self):
        """Connect, serve requests, reconnect on failure, until stop()."""
        self._stopping = False
        if not self.config.file_path.exists():
            logger.warning(f"File not found at {self.config.file_path}")
            logger.warning("Run 'pullrelay generate-file' to create a test file")
            logger.warning("Connecting anyway to register with server...")

        while not self._stopping:
            try:
                await self.connect()
                await self.serve()
            except (ConnectionError, OSError) as e:
                logger.error(f"Connection error: {e}")
            finally:
                await self._drop_connection()

            if self._stopping:
                break
            logger.info(f"Attempting to reconnect in {self.config.reconnect_interval} seconds...")
            await asyncio.sleep(self.config.reconnect_interval)

    async def connect(self):
        """Open the connection and register."""
        host, port = self.config.server_host, self.config.server_port
        logger.info(f"Connecting to server at {host}:{port}...")
        self.connection = await open_connection(host, port)
        logger.info("Connected to server")
        await self.connection.send(Register(client_id=self.client_id))

    async def serve(self):
        """Handle messages until the connection closes."""
        connection = self.connection
        while True:
            try:
                message = await connection.receive()
            except MalformedEnvelope as e:
                logger.warning(f"Discarding malformed message from server: {e}")
                continue

            if message is None:
                logger.info("Disconnected from server")
                return

            if isinstance(message, Registered):
                logger.info(f"Successfully registered as {message.client_id}")
                logger.info("Waiting for download requests...")
                self.registered.set()
            elif isinstance(message, DownloadRequest):
                await self._on_download_request(connection, message)
            else:
                logger.warning(f"Unexpected {message.type.value} message from server")

    async def _on_download_request(self, connection: Connection, request: DownloadRequest):
        logger.info(f"Received download request (ID: {request.session_id})")

        if self.is_busy:
            logger.warning(f"Rejecting download {request.session_id}, "
                           f"{self._active_id} still running")
            await connection.send(Error(
                message=f"Download {self._active_id} already in progress",
                session_id=request.session_id,
            ))
            return

        self._active_id = request.session_id
        task = asyncio.create_task(self._send(connection, request.session_id))
        self._transfers.add(task)
        task.add_done_callback(self._transfers.discard)
        task.add_done_callback(lambda _: self._release_slot(request.session_id))

    def _release_slot(self, session_id: str):
        if self._active_id == session_id:
            self._active_id = None

    async def _send(self, connection: Connection, session_id: str) -> Optional[TransferSession]:
        sender = ChunkSender(connection, owner_id=self.client_id,
                             chunk_size=self.config.chunk_size,
                             on_finish=self._release_slot)
        try:
            session = await sender.send_file(session_id, self.config.file_path)
        except ConnectionError as e:
            logger.warning(f"Could not answer download {session_id}: {e}")
            return None
        if session is not None:
            self.sessions.append(session)
        logger.info("Waiting for next download request...")
        return session

    async def wait_idle(self):
        """Wait for every transfer task, including ones winding down, to finish."""
        if self._transfers:
            await asyncio.gather(*self._transfers, return_exceptions=True)

    async def _drop_connection(self):
        self.registered.clear()
        transfers = list(self._transfers)
        for task in transfers:
            task.cancel()
        if transfers:
            await asyncio.gather(*transfers, return_exceptions=True)
        self._active_id = None
        if self.connection is not None:
            await self.connection.close()
            self.connection = None

    async def stop(self):
        """Close the connection and stop reconnecting."""
        logger.info("Shutting down client...")
        self._stopping = True
        await self._drop_connection()
