import asyncio
import sys
from pathlib import Path
from typing import Callable, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pullrelay.transfer.messages import Chunk, Complete, Error  # noqa: E402


class FakeConnection:
    """In-memory stand-in for transfer.protocol.Connection."""

    def __init__(self, fail_after: Optional[int] = None, delay: float = 0.0,
                 on_send: Optional[Callable] = None):
        self.sent: List = []
        self.fail_after = fail_after
        self.delay = delay
        self.on_send = on_send
        self.closed = False

    async def send(self, message):
        if self.closed:
            raise ConnectionError("Connection closed")
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise ConnectionResetError("peer went away")
        await asyncio.sleep(self.delay)
        if self.on_send:
            self.on_send(message)
        self.sent.append(message)

    async def close(self):
        self.closed = True

    def of_type(self, kind) -> List:
        return [m for m in self.sent if isinstance(m, kind)]

    @property
    def chunks(self) -> List[Chunk]:
        return self.of_type(Chunk)

    @property
    def completes(self) -> List[Complete]:
        return self.of_type(Complete)

    @property
    def errors(self) -> List[Error]:
        return self.of_type(Error)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0,
                     interval: float = 0.01) -> bool:
    """Poll until predicate() is true or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(interval)
    return True


@pytest.fixture
def fake_connection_factory():
    return FakeConnection
