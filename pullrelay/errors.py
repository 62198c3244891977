"""
Error Taxonomy

Errors that cross a component boundary. Protocol-level failures
(missing file, read/write faults, integrity checks) are terminal for one
session only; they are reported to the peer with an ERROR envelope and
never take down the connection or the process.
"""


class RelayError(RuntimeError):
    """Base class for all pullrelay errors."""


class ClientNotConnected(RelayError):
    """Raised when a download is requested from a client that is not registered."""

    def __init__(self, client_id: str):
        super().__init__(f"Client {client_id} is not connected")
        self.client_id = client_id


class DownloadInProgress(RelayError):
    """Raised when a client already has a pending or running download."""

    def __init__(self, client_id: str, session_id: str):
        super().__init__(
            f"Client {client_id} already has download {session_id} in progress"
        )
        self.client_id = client_id
        self.session_id = session_id


class MalformedEnvelope(RelayError):
    """A frame that could not be decoded into a known message."""


class InvalidTransition(RelayError):
    """A session was asked to move to a state it cannot reach."""


class SinkWriteError(RelayError):
    """The receiver could not write a chunk to its sink."""


class SequenceGap(RelayError):
    """A chunk arrived with an index other than the expected one."""

    def __init__(self, expected: int, received: int):
        super().__init__(f"Expected chunk {expected}, got {received}")
        self.expected = expected
        self.received = received


class TotalsMismatch(RelayError):
    """Sender-reported totals disagree with what the receiver wrote."""
