"""Async client for one Screeps server.

Owns the authenticated session, the one-shot HTTP endpoints and the live
console stream. Every HTTP call goes through a persistent
``httpx.AsyncClient`` and is capped at ``MAX_TIMEOUT`` seconds. Nothing is
retried here; a failed call raises and the caller decides.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from screeps_mcp.config import ConnectionConfig, PasswordCredentials, TokenCredentials
from screeps_mcp.console_stream import (
    ConsoleMessage,
    ConsoleStream,
    ConsoleStreamState,
    MessageKind,
    now_millis,
)
from screeps_mcp.errors import APIError, AuthenticationError, TransportError
from screeps_mcp.utils import maybe_decode_gz

logger = logging.getLogger(__name__)

# No single HTTP request may take longer than this, whatever the config says.
MAX_TIMEOUT: float = 120.0

# Capabilities requested when trading a password for a token. Only the
# endpoints and socket channels this client actually uses are enabled.
AUTH_TOKEN_SCOPE: dict[str, Any] = {
    "type": "restricted",
    "endpoints": {
        "GET /api/auth/me": True,
        "GET /api/user/console": True,
        "POST /api/user/console": True,
        "GET /api/user/memory": True,
        "POST /api/user/memory": True,
        "GET /api/user/memory-segment": True,
        "POST /api/user/memory-segment": True,
        "GET /api/game/room-objects": True,
        "GET /api/game/room-terrain": True,
        "GET /api/game/shards/info": True,
        "GET /api/user/name": False,
        "GET /api/user/money-history": False,
        "GET /api/market/my-orders": False,
    },
    "websockets": {"console": True, "rooms": False},
    "memorySegments": "0-99",
}


@dataclass
class Session:
    """Authenticated identity for this client. Never persisted."""

    token: str | None = None
    user_id: str | None = None
    username: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token and self.user_id)

    def clear(self) -> None:
        self.token = None
        self.user_id = None
        self.username = None


class ScreepsClient:
    """One authenticated relationship to one Screeps server.

    Several clients may coexist; each has its own session, HTTP pool and
    console stream.

    Example:
        async with ScreepsClient(config) as client:
            me = await client.get_user_info()
            await client.start_console_stream(buffer_size=200)
    """

    def __init__(
        self,
        config: ConnectionConfig,
        ws_connect: Callable[[str], Awaitable[Any]] | None = None,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self.config = config
        self.base_url = config.base_url
        self.timeout = min(config.request_timeout, MAX_TIMEOUT)
        self.session = Session()
        self._clock = clock
        self._client: httpx.AsyncClient | None = None
        self._auth_lock = asyncio.Lock()
        self.stream = ConsoleStream(
            config.websocket_url,
            self._stream_session,
            default_shard=config.shard,
            handshake_timeout=config.handshake_timeout,
            connect=ws_connect,
            clock=clock,
        )

    async def __aenter__(self) -> ScreepsClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the persistent HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def _reset_client(self) -> None:
        """Close and discard the current client so a fresh one is created."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> httpx.Response:
        logger.debug("%s %s", method, path)
        try:
            return await self._get_client().request(
                method, path, params=params, json=json, headers=headers, auth=auth
            )
        except httpx.TimeoutException as exc:
            await self._reset_client()
            raise TransportError(
                f"{self.config.host} did not respond within {self.timeout}s on {method} {path}"
            ) from exc
        except httpx.HTTPError as exc:
            await self._reset_client()
            raise TransportError(f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _check(response: httpx.Response, context: str) -> None:
        if response.is_success:
            return
        reason = response.reason_phrase
        message = f"{context} failed: {response.status_code} {reason}".rstrip()
        if response.status_code in (401, 403):
            raise AuthenticationError(message, response.status_code, reason)
        raise APIError(message, response.status_code, reason)

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict[str, Any]:
        """Parse a JSON body; empty or non-JSON bodies are an empty result."""
        if response.status_code == 204 or not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        if not isinstance(body, dict):
            return {"data": body}
        if isinstance(body.get("error"), str):
            raise APIError(
                f"Server error: {body['error']}", response.status_code, body["error"]
            )
        return body

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Issue one authenticated request and return its JSON body.

        Authenticates first when no token is held yet.

        Raises:
            AuthenticationError: On 401/403 or failed authentication.
            APIError: On any other non-success status.
            TransportError: If the request never completed.
        """
        if not self.session.token:
            await self.authenticate()
        response = await self._send(
            method,
            path,
            params=params,
            json=body if method != "GET" else None,
            headers={"X-Token": self.session.token or ""},
        )
        self._check(response, f"{method} {path}")
        # The server may rotate the token on any response.
        rotated = response.headers.get("X-Token")
        if rotated:
            self.session.token = rotated
        return self._parse_body(response)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(self) -> Session:
        """Obtain a token and confirm it with a "who am I" call.

        The session is only populated once the server accepts the token, so a
        failure leaves the client unauthenticated and the next call retries.
        An already authenticated session is returned as is.

        Raises:
            AuthenticationError: If the credentials or token are rejected.
        """
        async with self._auth_lock:
            # Callers queued behind a successful authentication reuse it.
            if self.session.is_authenticated:
                return self.session
            credentials = self.config.credentials
            if isinstance(credentials, TokenCredentials):
                token = credentials.token
            elif isinstance(credentials, PasswordCredentials):
                if self.config.is_official_server:
                    token = await self._exchange_token(credentials)
                else:
                    token = await self._sign_in(credentials)
            else:
                raise AuthenticationError("No usable credentials configured")

            me = await self._who_am_i(token)
            self.session.token = token
            self.session.user_id = me["_id"]
            self.session.username = me.get("username")
            logger.info("Authenticated as %s on %s", self.session.username, self.config.host)
            return self.session

    async def _exchange_token(self, credentials: PasswordCredentials) -> str:
        response = await self._send(
            "POST",
            "/api/user/auth-token",
            json=AUTH_TOKEN_SCOPE,
            auth=(credentials.username, credentials.password),
        )
        self._check(response, "Token generation")
        return self._token_from(self._parse_body(response), "Token generation")

    async def _sign_in(self, credentials: PasswordCredentials) -> str:
        response = await self._send(
            "POST",
            "/api/auth/signin",
            json={"email": credentials.username, "password": credentials.password},
        )
        self._check(response, "Authentication")
        return self._token_from(self._parse_body(response), "Authentication")

    @staticmethod
    def _token_from(body: dict[str, Any], context: str) -> str:
        token = body.get("token")
        if not isinstance(token, str) or not token:
            raise AuthenticationError(f"{context} failed: no token in response")
        return token

    async def _who_am_i(self, token: str) -> dict[str, Any]:
        response = await self._send("GET", "/api/auth/me", headers={"X-Token": token})
        self._check(response, "Token check")
        try:
            me = self._parse_body(response)
        except APIError as exc:
            raise AuthenticationError(f"Token check failed: {exc.reason}", response.status_code, exc.reason) from exc
        if not me.get("_id"):
            raise AuthenticationError("Token check failed: server did not return a user id")
        return me

    async def _stream_session(self) -> tuple[str, str]:
        if not self.session.is_authenticated:
            await self.authenticate()
        return self.session.token or "", self.session.user_id or ""

    # ------------------------------------------------------------------
    # One-shot endpoints
    # ------------------------------------------------------------------

    async def get_user_info(self) -> dict[str, Any]:
        info = await self.request("GET", "/api/auth/me")
        if info.get("_id"):
            self.session.user_id = info["_id"]
            self.session.username = info.get("username")
        return info

    async def get_room_objects(self, room: str, shard: str | None = None) -> list[dict[str, Any]]:
        body = await self.request(
            "GET", "/api/game/room-objects", {"room": room, "shard": shard or self.config.shard}
        )
        objects = body.get("objects")
        return objects if isinstance(objects, list) else []

    async def get_room_terrain(self, room: str, shard: str | None = None) -> dict[str, Any]:
        return await self.request(
            "GET",
            "/api/game/room-terrain",
            {"room": room, "encoded": 1, "shard": shard or self.config.shard},
        )

    async def get_memory(self, path: str, shard: str | None = None) -> str | None:
        params: dict[str, Any] = {"shard": shard or self.config.shard}
        if path:
            params["path"] = path
        body = await self.request("GET", "/api/user/memory", params)
        data = maybe_decode_gz(body.get("data"))
        return data if isinstance(data, str) else None

    async def set_memory(self, path: str, value: str, shard: str | None = None) -> dict[str, Any]:
        return await self.request(
            "POST",
            "/api/user/memory",
            body={"path": path, "value": value, "shard": shard or self.config.shard},
        )

    async def delete_memory(self, path: str, shard: str | None = None) -> dict[str, Any]:
        return await self.request(
            "POST",
            "/api/user/memory",
            body={"path": path, "value": None, "shard": shard or self.config.shard},
        )

    async def get_memory_segment(self, segment: int, shard: str | None = None) -> str:
        body = await self.request(
            "GET",
            "/api/user/memory-segment",
            {"segment": segment, "shard": shard or self.config.shard},
        )
        data = maybe_decode_gz(body.get("data"))
        return data if isinstance(data, str) else ""

    async def set_memory_segment(
        self, segment: int, data: str, shard: str | None = None
    ) -> dict[str, Any]:
        return await self.request(
            "POST",
            "/api/user/memory-segment",
            body={"segment": segment, "data": data, "shard": shard or self.config.shard},
        )

    async def get_shard_info(self) -> list[dict[str, Any]]:
        body = await self.request("GET", "/api/game/shards/info")
        shards = body.get("shards")
        return shards if isinstance(shards, list) else []

    async def execute_console_command(self, command: str, shard: str | None = None) -> dict[str, Any]:
        return await self.request(
            "POST",
            "/api/user/console",
            body={"expression": command, "shard": shard or self.config.shard},
        )

    async def get_console_history(self, limit: int = 20) -> list[ConsoleMessage]:
        body = await self.request("GET", "/api/user/console", {"limit": limit})
        raw_messages = body.get("messages")
        if not isinstance(raw_messages, list):
            return []
        history: list[ConsoleMessage] = []
        for raw in raw_messages:
            if not isinstance(raw, dict):
                continue
            try:
                kind = MessageKind(raw.get("type"))
            except ValueError:
                kind = MessageKind.LOG
            timestamp = raw.get("timestamp")
            history.append(
                ConsoleMessage(
                    line=str(raw.get("line") or raw.get("message") or ""),
                    shard=raw.get("shard") or self.config.shard,
                    timestamp=int(timestamp) if isinstance(timestamp, (int, float)) else self._clock(),
                    kind=kind,
                )
            )
        return history

    # ------------------------------------------------------------------
    # Console stream
    # ------------------------------------------------------------------

    async def start_console_stream(
        self, shard: str | None = None, buffer_size: int | None = None
    ) -> ConsoleStreamState:
        return await self.stream.start(shard, buffer_size)

    async def stop_console_stream(self) -> None:
        await self.stream.stop()

    def console_stream_state(self) -> ConsoleStreamState:
        return self.stream.state()

    def read_console_stream(self, limit: int = 50, since: int | None = None) -> list[ConsoleMessage]:
        return self.stream.read(limit, since)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connection_summary(self, name: str = "default") -> dict[str, Any]:
        return {
            "name": name,
            "host": self.config.host,
            "secure": self.config.secure,
            "shard": self.config.shard,
            "authenticated_user": self.session.username,
            "has_token": bool(self.session.token)
            or isinstance(self.config.credentials, TokenCredentials),
            "stream": self.stream.state() if self.stream.started else None,
        }

    async def aclose(self) -> None:
        """Stop the console stream and release the HTTP pool."""
        await self.stream.stop()
        await self._reset_client()
