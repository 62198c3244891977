"""
Relay Transport

Design Decision: Transport
==========================

Options Considered:
1. WebSocket
   - Built-in message framing, proxy friendly
   - Extra dependency and handshake for a private control channel

2. Raw TCP with custom framing
   - Lightweight, full control
   - Need to handle framing ourselves

3. HTTP long-polling
   - Works through anything
   - Clients would have to poll, no real duplex channel

Decision: Persistent TCP connection with length-prefixed JSON frames
- Client dials out once and keeps the stream open, so the server can
  push requests to clients behind NAT
- Simple 4-byte length prefix + JSON envelope text
- StreamWriter.drain() gives us the write-completion signal that
  the sender uses for flow control
- Easy to debug

Frame Format:
```
+----------------+---------------------------+
| Length (4B)    | Envelope (UTF-8 JSON)     |
+----------------+---------------------------+
```

A frame that decodes to garbage is dropped and the connection stays
open. A frame whose length is out of bounds cannot be skipped safely, so
the connection is closed.
"""

import asyncio
import logging
import struct
from typing import Awaitable, Callable, Optional, Set, Tuple

from . import messages
from .messages import Envelope

logger = logging.getLogger(__name__)

# Upper bound for one frame; a 64KB chunk encodes to ~88KB
MAX_FRAME_SIZE = 16 * 1024 * 1024

_LENGTH = struct.Struct('>I')


class FrameTooLarge(ConnectionError):
    """A peer announced a frame larger than MAX_FRAME_SIZE."""


class Connection:
    """
    One end of a persistent relay connection.

    Sends are serialized with a lock so frames from concurrent tasks
    never interleave, and every send waits for the transport to flush.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self._closed = False
        self._lock = asyncio.Lock()

    @property
    def remote_address(self) -> Optional[Tuple[str, int]]:
        """Get remote peer address."""
        return self.writer.get_extra_info('peername')

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()

    async def send(self, message: Envelope):
        """
        Send one envelope and wait until the transport has flushed it.

        Raises:
            ConnectionError: if the connection is closed or the peer went away
        """
        if self.closed:
            raise ConnectionError("Connection closed")

        body = messages.encode(message)
        async with self._lock:
            self.writer.write(_LENGTH.pack(len(body)) + body)
            await self.writer.drain()

    async def receive_frame(self) -> Optional[bytes]:
        """Read one raw frame. Returns None when the peer closed the stream."""
        if self._closed:
            return None
        try:
            header = await self.reader.readexactly(_LENGTH.size)
            (length,) = _LENGTH.unpack(header)
            if length > MAX_FRAME_SIZE:
                raise FrameTooLarge(f"Frame too large: {length}")
            return await self.reader.readexactly(length)
        except asyncio.IncompleteReadError:
            return None
        except (ConnectionResetError, BrokenPipeError):
            return None

    async def receive(self) -> Optional[Envelope]:
        """
        Receive one envelope.

        Returns:
            The decoded envelope, or None at end of stream

        Raises:
            MalformedEnvelope: the frame was read but could not be decoded
            FrameTooLarge: the stream is no longer usable
        """
        frame = await self.receive_frame()
        if frame is None:
            return None
        return messages.decode(frame)

    async def close(self):
        """Close the connection."""
        if not self._closed:
            self._closed = True
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except (ConnectionError, OSError):
                pass


ConnectionHandler = Callable[[Connection], Awaitable[None]]


class ConnectionListener:
    """
    TCP listener that hands every accepted socket to a handler coroutine.

    The handler owns the connection for its lifetime; the listener only
    makes sure it is closed afterwards.
    """

    def __init__(self, handler: ConnectionHandler,
                 host: str = '0.0.0.0', port: int = 8080):
        self.host = host
        self.port = port
        self.server: Optional[asyncio.AbstractServer] = None
        self._handler = handler
        self._connections: Set[Connection] = set()

    @property
    def bound_port(self) -> int:
        """Actual listening port (useful when started on port 0)."""
        return self.port

    async def start(self):
        """Start listening."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        addr = self.server.sockets[0].getsockname()
        self.port = addr[1]
        logger.info(f"Relay listening on {addr}")

    async def stop(self):
        """Stop listening and close every open connection."""
        if self.server:
            self.server.close()
            for connection in list(self._connections):
                await connection.close()
            await self.server.wait_closed()
            self.server = None
            logger.info("Relay listener stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        connection = Connection(reader, writer)
        peer = connection.remote_address
        self._connections.add(connection)
        logger.debug(f"New connection from {peer}")

        try:
            await self._handler(connection)
        except Exception as e:
            logger.error(f"Error handling connection from {peer}: {e}", exc_info=True)
        finally:
            self._connections.discard(connection)
            await connection.close()
            logger.debug(f"Connection closed: {peer}")


async def open_connection(host: str, port: int,
                          timeout: float = 10.0) -> Connection:
    """
    Dial the relay server.

    Raises:
        OSError: if the connection could not be established in time
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise ConnectionError(f"Timed out connecting to {host}:{port}") from e
    return Connection(reader, writer)
