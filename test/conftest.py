"""In-memory stand-ins for the websockets client connection."""

import asyncio
from typing import Any, List, Optional

import pytest

from syncload.config import SessionConfig, TargetConfig
from syncload.echo_server import answer
from syncload.metrics import MetricsRegistry

_END = object()


class FakeTransport:
    def __init__(self) -> None:
        self.aborted = False

    def abort(self) -> None:
        self.aborted = True


class FakeConnection:
    """Answers like the echo server, or misbehaves on request.

    behavior: ``echo`` replies to each frame, ``silent`` never replies,
    ``reverse`` replies to every ``batch`` frames in reverse order and
    ``drop`` closes from the peer side after the first frame.
    """

    def __init__(self,
                 url: str,
                 behavior: str = "echo",
                 delay: float = 0.0,
                 batch: int = 2,
                 close_hangs: bool = False,
                 close_delay: float = 0.0,
                 fail_send: bool = False) -> None:
        self.url = url
        self.behavior = behavior
        self.delay = delay
        self.batch = batch
        self.close_hangs = close_hangs
        self.close_delay = close_delay
        self.fail_send = fail_send
        self.sent: List[Any] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.transport = FakeTransport()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._held: List[Any] = []

    def _deliver(self, reply: Any) -> None:
        if self.delay:
            asyncio.get_running_loop().call_later(self.delay, self._inbox.put_nowait, reply)
        else:
            self._inbox.put_nowait(reply)

    async def send(self, message: Any) -> None:
        if self.fail_send:
            raise OSError("broken pipe")
        self.sent.append(message)
        if self.behavior == "echo":
            self._deliver(answer(message))
        elif self.behavior == "reverse":
            self._held.append(answer(message))
            if len(self._held) >= self.batch:
                for reply in reversed(self._held):
                    self._deliver(reply)
                self._held = []
        elif self.behavior == "drop":
            self.close_code = 1006
            self.close_reason = ""
            self._inbox.put_nowait(_END)

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> Any:
        item = await self._inbox.get()
        if item is _END:
            raise StopAsyncIteration
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_hangs:
            await asyncio.Event().wait()
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(_END)


class FakeConnector:
    """Drop-in for ``websockets.asyncio.client.connect``."""

    def __init__(self,
                 error: Optional[BaseException] = None,
                 hang: bool = False,
                 handshake_delay: float = 0.0,
                 **connection_options: Any) -> None:
        self.error = error
        self.hang = hang
        self.handshake_delay = handshake_delay
        self.connection_options = connection_options
        self.calls: List[tuple] = []
        self.connections: List[FakeConnection] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, url: str, **options: Any) -> FakeConnection:
        self.calls.append((url, options))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.hang:
                await asyncio.Event().wait()
            if self.handshake_delay:
                await asyncio.sleep(self.handshake_delay)
            if self.error is not None:
                raise self.error
        finally:
            self.in_flight -= 1
        conn = FakeConnection(url, **self.connection_options)
        self.connections.append(conn)
        return conn


@pytest.fixture
def registry() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def target() -> TargetConfig:
    return TargetConfig(url="ws://fake.invalid/ws")


@pytest.fixture
def session_config(target: TargetConfig) -> SessionConfig:
    return SessionConfig(target=target, stall_timeout_ms=2000, close_grace_ms=200)
