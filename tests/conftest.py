from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional, Union

import pytest

Frame = Union[str, bytes]


class FakeConnection:
    """In-memory duplex connection; ``responder`` reacts to every sent frame."""

    def __init__(self) -> None:
        self.sent: list[Frame] = []
        self.closed = False
        self.responder: Optional[Callable[["FakeConnection", Frame], None]] = None
        self._incoming: asyncio.Queue[Optional[Frame]] = asyncio.Queue()

    async def send(self, message: Frame) -> None:
        self.sent.append(message)
        if self.responder is not None:
            self.responder(self, message)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def push(self, payload: Any) -> None:
        if isinstance(payload, dict):
            payload = json.dumps(payload)
        self._incoming.put_nowait(payload)

    def server_close(self) -> None:
        self._incoming.put_nowait(None)

    def sent_json(self) -> list[dict]:
        return [json.loads(frame) for frame in self.sent if isinstance(frame, str)]

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> Frame:
        frame = await self._incoming.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()
