"""
pullrelay - reverse-initiated file pulls

Clients behind private networks dial out to a relay server and stay
connected; the server pulls files from them on demand over that
connection.
"""

from .client import RelayClient
from .config import ClientConfig, ServerConfig
from .server import RelayServer

__version__ = '1.0.0'

__all__ = [
    'RelayClient',
    'RelayServer',
    'ClientConfig',
    'ServerConfig',
]
