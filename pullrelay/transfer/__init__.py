"""
Transfer Module - Relay protocol and chunked file transfer

Handles the wire protocol between the relay server and its clients,
and the sending/reassembly of files over it.
"""

from .protocol import Connection, ConnectionListener, open_connection
from .session import SessionState, TransferSession
from .sender import ChunkSender
from .receiver import ChunkAssembler

__all__ = [
    'Connection',
    'ConnectionListener',
    'open_connection',
    'SessionState',
    'TransferSession',
    'ChunkSender',
    'ChunkAssembler',
]
