"""
Shared pytest fixtures for the Screeps MCP test suite.

Provides:
- Connection configs for token and password authentication
- An in-memory WebSocket stand-in for the console stream
- A controllable millisecond clock
- Frame builders for plain and compressed console payloads
"""

from __future__ import annotations

import asyncio
import base64
import json
import zlib
from collections.abc import AsyncGenerator
from typing import Any

import pytest

from screeps_mcp.client import ScreepsClient
from screeps_mcp.config import ConnectionConfig, PasswordCredentials, TokenCredentials

BASE_URL = "https://screeps.com"
TOKEN = "test-token"
USER_ID = "user-123"
USERNAME = "tester"

# ============================================================================
# FAKES
# ============================================================================


class FakeSocket:
    """Scripted replacement for a websockets client connection.

    Frames queued with ``push`` are yielded by async iteration in order.
    Pushing ``None`` ends the iteration (clean close); pushing an exception
    raises it from the iterator (broken socket). Once the iteration has
    ended, ``close`` queues nothing further.
    """

    def __init__(self, *replies: Any) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.ended = False
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        for reply in replies:
            self.push(reply)

    def push(self, frame: Any) -> None:
        self.incoming.put_nowait(frame)

    async def send(self, data: str) -> None:
        self.sent.append(data)

    def __aiter__(self) -> FakeSocket:
        return self

    async def __anext__(self) -> Any:
        if self.ended:
            raise StopAsyncIteration
        item = await self.incoming.get()
        if item is None:
            self.ended = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self.ended = True
            raise item
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            if not self.ended:
                self.push(None)


class FakeConnector:
    """Hands out prepared sockets and records the URLs dialled."""

    def __init__(self, *sockets: FakeSocket) -> None:
        self.sockets = list(sockets)
        self.urls: list[str] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        return self.sockets.pop(0)


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


async def settle(socket: FakeSocket) -> None:
    """Yield until the stream reader has consumed every queued frame."""
    while not socket.incoming.empty() and not socket.ended and not socket.closed:
        await asyncio.sleep(0)
    await asyncio.sleep(0)


def console_payload(**sections: list[str]) -> list[Any]:
    return [f"user:{USER_ID}/console", {"messages": sections, "shard": "shard0"}]


def plain_frame(**sections: list[str]) -> str:
    return json.dumps(console_payload(**sections))


def gz_frame(payload: Any, separator: str = "") -> str:
    compressed = zlib.compress(json.dumps(payload).encode("utf-8"))
    return "gz" + separator + base64.b64encode(compressed).decode("ascii")


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def token_config() -> ConnectionConfig:
    return ConnectionConfig(host="screeps.com", credentials=TokenCredentials(TOKEN))


@pytest.fixture
def password_config() -> ConnectionConfig:
    return ConnectionConfig(
        host="screeps.com", credentials=PasswordCredentials("tester@example.com", "hunter2")
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def client(token_config: ConnectionConfig, clock: FakeClock) -> AsyncGenerator[ScreepsClient, None]:
    async with ScreepsClient(token_config, clock=clock) as client:
        yield client


def me_body() -> dict[str, Any]:
    return {"ok": 1, "_id": USER_ID, "username": USERNAME}
