"""
Relay Messages

Every message exchanged on a client connection is one of a closed set of
envelope variants. The wire form is a JSON object with a ``type`` tag;
field names on the wire are camelCase, matching the deployed clients.

```
register          {"clientId"}
registered        {"clientId"}
download-request  {"downloadId"}
file-chunk        {"downloadId", "chunkIndex", "chunk"}       # chunk is base64
file-complete     {"downloadId", "totalChunks", "fileSize"}
error             {"downloadId"?, "error"}
```

Decoding happens once, at the boundary. Anything that is not valid JSON,
carries an unknown tag or misses a field raises MalformedEnvelope.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..errors import MalformedEnvelope


class MessageType(Enum):
    """Relay protocol message types."""
    REGISTER = "register"
    REGISTERED = "registered"
    DOWNLOAD_REQUEST = "download-request"
    CHUNK = "file-chunk"
    COMPLETE = "file-complete"
    ERROR = "error"


@dataclass(frozen=True)
class Register:
    client_id: str

    type = MessageType.REGISTER

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'clientId': self.client_id}


@dataclass(frozen=True)
class Registered:
    client_id: str

    type = MessageType.REGISTERED

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'clientId': self.client_id}


@dataclass(frozen=True)
class DownloadRequest:
    session_id: str

    type = MessageType.DOWNLOAD_REQUEST

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'downloadId': self.session_id}


@dataclass(frozen=True)
class Chunk:
    """One piece of file content. ``payload`` is base64 text."""
    session_id: str
    sequence_index: int
    payload: str

    type = MessageType.CHUNK

    @classmethod
    def from_bytes(cls, session_id: str, sequence_index: int, data: bytes) -> 'Chunk':
        """Wrap raw file bytes into a chunk message."""
        return cls(
            session_id=session_id,
            sequence_index=sequence_index,
            payload=base64.b64encode(data).decode('ascii'),
        )

    def decode_payload(self) -> bytes:
        """Return the raw bytes carried by this chunk."""
        try:
            return base64.b64decode(self.payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedEnvelope(f"Invalid chunk payload: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'downloadId': self.session_id,
            'chunkIndex': self.sequence_index,
            'chunk': self.payload,
        }


@dataclass(frozen=True)
class Complete:
    session_id: str
    total_chunks: int
    total_bytes: int

    type = MessageType.COMPLETE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'downloadId': self.session_id,
            'totalChunks': self.total_chunks,
            'fileSize': self.total_bytes,
        }


@dataclass(frozen=True)
class Error:
    message: str
    session_id: Optional[str] = None

    type = MessageType.ERROR

    def to_dict(self) -> Dict[str, Any]:
        data = {'type': self.type.value, 'error': self.message}
        if self.session_id is not None:
            data['downloadId'] = self.session_id
        return data


Envelope = Union[Register, Registered, DownloadRequest, Chunk, Complete, Error]


def encode(message: Envelope) -> bytes:
    """Serialize an envelope to UTF-8 JSON text."""
    return json.dumps(message.to_dict(), separators=(',', ':')).encode('utf-8')


def _field(data: Dict[str, Any], key: str, kind: type) -> Any:
    value = data.get(key)
    # bool is an int subclass; reject it for numeric fields
    if not isinstance(value, kind) or isinstance(value, bool):
        raise MalformedEnvelope(
            f"{data.get('type')} message needs {kind.__name__} field '{key}'"
        )
    return value


def decode(raw: Union[bytes, str]) -> Envelope:
    """
    Parse wire text into an envelope variant.

    Raises:
        MalformedEnvelope: for bad JSON, unknown tags or missing fields
    """
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedEnvelope(f"Not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedEnvelope("Envelope must be a JSON object")

    try:
        msg_type = MessageType(data.get('type'))
    except ValueError:
        raise MalformedEnvelope(f"Unknown message type: {data.get('type')!r}")

    if msg_type is MessageType.REGISTER:
        return Register(client_id=_field(data, 'clientId', str))
    if msg_type is MessageType.REGISTERED:
        return Registered(client_id=_field(data, 'clientId', str))
    if msg_type is MessageType.DOWNLOAD_REQUEST:
        return DownloadRequest(session_id=_field(data, 'downloadId', str))
    if msg_type is MessageType.CHUNK:
        index = _field(data, 'chunkIndex', int)
        if index < 0:
            raise MalformedEnvelope(f"Negative chunk index: {index}")
        return Chunk(
            session_id=_field(data, 'downloadId', str),
            sequence_index=index,
            payload=_field(data, 'chunk', str),
        )
    if msg_type is MessageType.COMPLETE:
        return Complete(
            session_id=_field(data, 'downloadId', str),
            total_chunks=_field(data, 'totalChunks', int),
            total_bytes=_field(data, 'fileSize', int),
        )

    session_id = data.get('downloadId')
    if session_id is not None and not isinstance(session_id, str):
        raise MalformedEnvelope("error message has a non-string 'downloadId'")
    return Error(message=str(data.get('error', '')), session_id=session_id)
