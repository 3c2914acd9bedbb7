"""Live console stream over the Screeps WebSocket.

The stream walks a small state machine::

    STOPPED -> CONNECTING -> AUTHENTICATING -> SUBSCRIBED -> STOPPED

``start()`` only returns once the socket is subscribed (or raises). After
that a background task reads frames, decodes them and appends classified
console lines to a bounded buffer. Any socket failure while subscribed drops
the stream back to STOPPED without raising; the buffer stays readable.

Frames on the wire:

- ``time <n>``                 heartbeat, ignored
- ``gz<base64(deflate(json))>`` compressed payload
- anything else                plain JSON payload

A payload is ``[channel, {"messages": {"log": [...], "results": [...]},
"shard": "shard0"}]``. Frames that fail to decode are logged and dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import zlib
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import WebSocketException

from screeps_mcp.errors import AuthenticationError, ProtocolDecodeError, ScreepsError, TransportError
from screeps_mcp.utils import decode_gz_text, is_string_list, strip_html_tags

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 500
MIN_BUFFER_SIZE = 10
MAX_BUFFER_SIZE = 5000


class StreamStatus(str, Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SUBSCRIBED = "subscribed"


class MessageKind(str, Enum):
    LOG = "log"
    RESULT = "result"
    ERROR = "error"
    HIGHLIGHT = "highlight"


# Payload section name -> message kind, in the order sections are buffered.
_SECTION_KINDS: tuple[tuple[str, MessageKind], ...] = (
    ("log", MessageKind.LOG),
    ("results", MessageKind.RESULT),
    ("errors", MessageKind.ERROR),
    ("highlight", MessageKind.HIGHLIGHT),
)


@dataclass(frozen=True)
class ConsoleMessage:
    """One console line as received from the server."""

    line: str
    shard: str
    timestamp: int
    kind: MessageKind = MessageKind.LOG


@dataclass(frozen=True)
class ConsoleStreamState:
    shard: str
    is_active: bool
    buffered_count: int
    max_buffered_count: int


def clamp_buffer_size(size: int) -> int:
    return max(MIN_BUFFER_SIZE, min(MAX_BUFFER_SIZE, int(size)))


def now_millis() -> int:
    return int(time.time() * 1000)


def decode_frame(raw: str | bytes) -> Any | None:
    """Decode one socket frame into its JSON payload.

    Returns ``None`` for heartbeats.

    Raises:
        ProtocolDecodeError: If the frame is not valid UTF-8, base64,
            DEFLATE or JSON.
    """
    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        if text.startswith("time"):
            return None
        if text.startswith("gz"):
            text = decode_gz_text(text)
        return json.loads(text)
    except (ValueError, zlib.error) as exc:
        preview = raw[:40] if isinstance(raw, str) else repr(raw[:40])
        raise ProtocolDecodeError(f"Undecodable frame {preview!r}: {exc}") from exc


def classify_payload(payload: Any, shard: str, timestamp: int) -> list[ConsoleMessage]:
    """Turn a decoded payload into console messages.

    Payloads of any other shape yield nothing.
    """
    if not isinstance(payload, list) or len(payload) < 2:
        return []
    data = payload[1]
    if not isinstance(data, dict):
        return []
    if isinstance(data.get("shard"), str):
        shard = data["shard"]
    section = data.get("messages", data)
    if not isinstance(section, dict):
        return []

    messages: list[ConsoleMessage] = []
    for key, kind in _SECTION_KINDS:
        lines = section.get(key)
        if is_string_list(lines):
            messages.extend(
                ConsoleMessage(strip_html_tags(line), shard, timestamp, kind) for line in lines
            )
    # Script-level failures arrive as a single string.
    if isinstance(data.get("error"), str):
        messages.append(
            ConsoleMessage(strip_html_tags(data["error"]), shard, timestamp, MessageKind.ERROR)
        )
    return messages


class ConsoleBuffer:
    """Most-recent-N console messages in arrival order."""

    def __init__(self, max_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self._items: deque[ConsoleMessage] = deque(maxlen=max_size)

    def __len__(self) -> int:
        return len(self._items)

    @property
    def max_size(self) -> int:
        return self._items.maxlen or 0

    def resize(self, max_size: int) -> None:
        """Change the bound, keeping the newest entries."""
        if max_size != self.max_size:
            self._items = deque(self._items, maxlen=max_size)

    def append(self, message: ConsoleMessage) -> None:
        self._items.append(message)

    def read(self, limit: int, since: int | None = None) -> list[ConsoleMessage]:
        """Return up to *limit* newest messages, optionally only those newer than *since*."""
        if limit <= 0:
            return []
        items = list(self._items)
        if since is not None:
            items = [message for message in items if message.timestamp > since]
        return items[-limit:]


SessionProvider = Callable[[], Awaitable[tuple[str, str]]]


class ConsoleStream:
    """Owns the console WebSocket, its handshake and the message buffer.

    Args:
        url: WebSocket endpoint, e.g. ``wss://screeps.com/socket/websocket``.
        session: Coroutine returning ``(token, user_id)``, authenticating
            first when needed.
        default_shard: Shard reported when ``start`` is called without one.
        handshake_timeout: Seconds ``start`` waits for the subscription.
        connect: Callable opening the socket; ``websockets.connect`` unless
            replaced in tests.
        clock: Returns epoch milliseconds for message timestamps.
        buffer_size: Initial buffer bound. Sizes passed to ``start`` are
            clamped to [MIN_BUFFER_SIZE, MAX_BUFFER_SIZE]; this one is not.
    """

    def __init__(
        self,
        url: str,
        session: SessionProvider,
        default_shard: str,
        handshake_timeout: float = 10.0,
        connect: Callable[[str], Awaitable[Any]] | None = None,
        clock: Callable[[], int] = now_millis,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self.url = url
        self._session = session
        self._default_shard = default_shard
        self._handshake_timeout = handshake_timeout
        self._connect = connect or websockets.connect
        self._clock = clock
        self._buffer = ConsoleBuffer(buffer_size)
        self._status = StreamStatus.STOPPED
        self._shard: str | None = None
        self._socket: Any = None
        self._task: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None

    @property
    def status(self) -> StreamStatus:
        return self._status

    @property
    def started(self) -> bool:
        """True once ``start`` has been called at least once."""
        return self._shard is not None

    def state(self) -> ConsoleStreamState:
        return ConsoleStreamState(
            shard=self._shard or self._default_shard,
            is_active=self._status is StreamStatus.SUBSCRIBED,
            buffered_count=len(self._buffer),
            max_buffered_count=self._buffer.max_size,
        )

    def read(self, limit: int = 50, since: int | None = None) -> list[ConsoleMessage]:
        return self._buffer.read(limit, since)

    async def start(self, shard: str | None = None, buffer_size: int | None = None) -> ConsoleStreamState:
        """Open, authenticate and subscribe the console socket.

        A call for the shard that is already subscribed is a no-op; a call
        while a handshake for that shard is pending waits for it.

        Raises:
            AuthenticationError: If the server rejects the token.
            TransportError: If the socket fails, closes or times out before
                the subscription is sent, or ``stop`` is called first.
        """
        target = shard or self._default_shard
        if buffer_size is not None:
            self._buffer.resize(clamp_buffer_size(buffer_size))

        if self._shard == target and self._status is StreamStatus.SUBSCRIBED:
            return self.state()
        if self._shard == target and self._ready is not None and not self._ready.done():
            await self._await_ready(self._ready)
            return self.state()

        # Everything up to create_task runs without yielding, so a concurrent
        # start() or stop() always sees this attempt.
        previous = self._detach()
        self._shard = target
        self._status = StreamStatus.CONNECTING
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._ready = ready
        self._task = asyncio.create_task(self._run(ready, previous))
        await self._await_ready(ready)
        logger.info("Console stream subscribed on %s (buffer %d)", target, self._buffer.max_size)
        return self.state()

    async def _await_ready(self, ready: asyncio.Future[None]) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(ready), self._handshake_timeout)
        except asyncio.TimeoutError as exc:
            if self._ready is ready:
                await self.stop()
            raise TransportError(
                f"Console stream handshake timed out after {self._handshake_timeout}s"
            ) from exc
        except asyncio.CancelledError:
            if self._ready is ready:
                await self.stop()
            raise

    def _detach(self) -> tuple[asyncio.Task[None] | None, asyncio.Future[None] | None]:
        """Drop the current reader and settle in STOPPED without yielding."""
        task, self._task = self._task, None
        ready, self._ready = self._ready, None
        if self._status is not StreamStatus.STOPPED:
            logger.info("Console stream stopped")
        self._socket = None
        self._status = StreamStatus.STOPPED
        return task, ready

    @staticmethod
    async def _retire(task: asyncio.Task[None] | None, ready: asyncio.Future[None] | None) -> None:
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        if ready is None or ready.cancelled():
            return
        if not ready.done():
            # A reader cancelled before its first step never reaches its handler.
            ready.set_exception(TransportError("Console stream stopped before subscription"))
        # Marks a failed handshake as retrieved when nobody awaits it anymore.
        ready.exception()

    async def stop(self) -> None:
        """Close the socket and settle in STOPPED. Buffered messages are kept."""
        await self._retire(*self._detach())

    def handle_frame(self, raw: str | bytes) -> int:
        """Decode one frame and buffer its messages. Returns how many were added."""
        try:
            payload = decode_frame(raw)
        except ProtocolDecodeError as exc:
            logger.warning("Discarding console frame: %s", exc)
            return 0
        if payload is None:
            return 0
        messages = classify_payload(payload, self._shard or self._default_shard, self._clock())
        for message in messages:
            self._buffer.append(message)
        return len(messages)

    async def _handshake(self, socket: Any, token: str, user_id: str) -> None:
        self._status = StreamStatus.AUTHENTICATING
        await socket.send(f"auth {token}")
        async for raw in socket:
            text = raw.decode("utf-8", "replace") if isinstance(raw, (bytes, bytearray)) else raw
            if text.startswith("auth ok"):
                await socket.send(f"subscribe user:{user_id}/console")
                self._status = StreamStatus.SUBSCRIBED
                return
            if text.startswith("auth failed"):
                raise AuthenticationError(
                    "Console stream rejected the token", status_code=401, reason="auth failed"
                )
            self.handle_frame(text)
        raise TransportError("Console stream closed before authentication")

    async def _run(
        self,
        ready: asyncio.Future[None],
        previous: tuple[asyncio.Task[None] | None, asyncio.Future[None] | None],
    ) -> None:
        socket = None
        try:
            await self._retire(*previous)
            token, user_id = await self._session()
            socket = await self._connect(self.url)
            self._socket = socket
            await self._handshake(socket, token, user_id)
            ready.set_result(None)
            async for raw in socket:
                self.handle_frame(raw)
            logger.info("Console stream closed by server")
        except asyncio.CancelledError:
            if not ready.done():
                ready.set_exception(TransportError("Console stream stopped before subscription"))
            raise
        except (WebSocketException, OSError) as exc:
            if not ready.done():
                ready.set_exception(TransportError(f"Console stream failed: {exc}"))
            else:
                logger.warning("Console stream lost: %s", exc)
        except ScreepsError as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.warning("Console stream ended: %s", exc)
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.exception("Console stream reader crashed")
        finally:
            if socket is not None:
                await socket.close()
            # A reader that was replaced or stopped leaves the state to its successor.
            if self._task is asyncio.current_task():
                self._socket = None
                self._status = StreamStatus.STOPPED
