"""Connection settings for the Screeps MCP server.

Settings come from three sources, highest precedence first:

1. Command-line flags (``--host``, ``--token``, ...)
2. Environment variables (``SCREEPS_HOST``, ``SCREEPS_TOKEN``, ...)
3. Defaults

The resulting objects are frozen. The client and tools never read the
environment themselves; they receive a fully resolved ``ConnectionConfig``.
"""

from __future__ import annotations

import argparse
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Union

from screeps_mcp.errors import ConfigurationError

DEFAULT_HOST = "screeps.com"
DEFAULT_SHARD = "shard0"
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_HANDSHAKE_TIMEOUT = 10.0
DEFAULT_RATE_LIMIT = 100
DEFAULT_RATE_WINDOW = 60.0
DEFAULT_LOG_LEVEL = "INFO"

# Hosts served by the official token API; anything else is a private server.
OFFICIAL_HOSTS = ("screeps.com", "screeps.com/ptr")

ENV_HOST = "SCREEPS_HOST"
ENV_SECURE = "SCREEPS_SECURE"
ENV_TOKEN = "SCREEPS_TOKEN"
ENV_USERNAME = "SCREEPS_USERNAME"
ENV_PASSWORD = "SCREEPS_PASSWORD"
ENV_SHARD = "SCREEPS_SHARD"
ENV_RATE_LIMIT = "SCREEPS_RATE_LIMIT"
ENV_HANDSHAKE_TIMEOUT = "SCREEPS_HANDSHAKE_TIMEOUT"
ENV_LOG_LEVEL = "LOG_LEVEL"


@dataclass(frozen=True)
class TokenCredentials:
    """A pre-issued API token."""

    token: str

    def __repr__(self) -> str:
        return "TokenCredentials(token=[REDACTED])"


@dataclass(frozen=True)
class PasswordCredentials:
    """Username and password, exchanged for a token on first use."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"PasswordCredentials(username={self.username!r}, password=[REDACTED])"


Credentials = Union[TokenCredentials, PasswordCredentials]


@dataclass(frozen=True)
class ConnectionConfig:
    """Everything needed to reach and authenticate against one server."""

    host: str
    credentials: Credentials
    secure: bool = True
    shard: str = DEFAULT_SHARD
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigurationError("host must not be empty")
        if not isinstance(self.credentials, (TokenCredentials, PasswordCredentials)):
            raise ConfigurationError("credentials must be a token or a username/password pair")
        if self.request_timeout <= 0 or self.handshake_timeout <= 0:
            raise ConfigurationError("timeouts must be positive")

    @property
    def base_url(self) -> str:
        return f"{'https' if self.secure else 'http'}://{self.host}"

    @property
    def websocket_url(self) -> str:
        return f"{'wss' if self.secure else 'ws'}://{self.host}/socket/websocket"

    @property
    def is_official_server(self) -> bool:
        return self.host in OFFICIAL_HOSTS

    def redacted(self) -> dict[str, Any]:
        """Return a loggable view with secrets masked."""
        view: dict[str, Any] = {"host": self.host, "secure": self.secure, "shard": self.shard}
        if isinstance(self.credentials, TokenCredentials):
            view["token"] = "[REDACTED]"
        else:
            view["username"] = self.credentials.username
            view["password"] = "[REDACTED]"
        return view


@dataclass(frozen=True)
class ServerSettings:
    """Process-level settings around one connection."""

    connection: ConnectionConfig
    rate_limit_max: int = DEFAULT_RATE_LIMIT
    rate_limit_window: float = DEFAULT_RATE_WINDOW
    log_level: str = DEFAULT_LOG_LEVEL


def resolve_credentials(
    token: str | None, username: str | None, password: str | None
) -> Credentials:
    """Pick exactly one credential variant or fail."""
    has_login = bool(username) or bool(password)
    if token and has_login:
        raise ConfigurationError(
            "Provide either a token or a username/password pair, not both"
        )
    if token:
        return TokenCredentials(token)
    if username and password:
        return PasswordCredentials(username, password)
    if has_login:
        raise ConfigurationError("Both username and password are required")
    raise ConfigurationError(
        "Authentication required: provide --token or both --username and --password "
        f"(or set {ENV_TOKEN}, {ENV_USERNAME} and {ENV_PASSWORD})"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="screeps-mcp",
        description="MCP server exposing the Screeps HTTP and WebSocket API as tools",
    )
    parser.add_argument("--host", help=f"Server host (env {ENV_HOST}, default {DEFAULT_HOST})")
    tls = parser.add_mutually_exclusive_group()
    tls.add_argument("--secure", dest="secure", action="store_true", default=None, help="Use TLS")
    tls.add_argument("--insecure", dest="secure", action="store_false", help="Use plain HTTP/WS")
    parser.add_argument("--token", help=f"API token (env {ENV_TOKEN})")
    parser.add_argument("--username", help=f"Account username or email (env {ENV_USERNAME})")
    parser.add_argument("--password", help=f"Account password (env {ENV_PASSWORD})")
    parser.add_argument("--shard", help=f"Default shard (env {ENV_SHARD}, default {DEFAULT_SHARD})")
    parser.add_argument(
        "--rate-limit", type=int, help=f"Calls per tool per minute (env {ENV_RATE_LIMIT})"
    )
    parser.add_argument(
        "--handshake-timeout",
        type=float,
        help=f"Seconds to wait for the console stream handshake (env {ENV_HANDSHAKE_TIMEOUT})",
    )
    parser.add_argument("--log-level", help=f"Logging level (env {ENV_LOG_LEVEL})")
    return parser


def _env_number(environ: Mapping[str, str], name: str, cast: type, default: Any) -> Any:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def load_settings(
    argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None
) -> ServerSettings:
    """Resolve settings from CLI flags over environment variables over defaults.

    Raises:
        ConfigurationError: If credentials are missing or contradictory, or a
            numeric setting does not parse.
    """
    env = os.environ if environ is None else environ
    args = build_parser().parse_args(argv)

    if args.secure is not None:
        secure = args.secure
    else:
        secure = env.get(ENV_SECURE, "true").lower() != "false"

    credentials = resolve_credentials(
        args.token or env.get(ENV_TOKEN) or None,
        args.username or env.get(ENV_USERNAME) or None,
        args.password or env.get(ENV_PASSWORD) or None,
    )

    handshake_timeout = args.handshake_timeout
    if handshake_timeout is None:
        handshake_timeout = _env_number(
            env, ENV_HANDSHAKE_TIMEOUT, float, DEFAULT_HANDSHAKE_TIMEOUT
        )

    connection = ConnectionConfig(
        host=args.host or env.get(ENV_HOST) or DEFAULT_HOST,
        secure=secure,
        shard=args.shard or env.get(ENV_SHARD) or DEFAULT_SHARD,
        credentials=credentials,
        handshake_timeout=handshake_timeout,
    )

    rate_limit = args.rate_limit
    if rate_limit is None:
        rate_limit = _env_number(env, ENV_RATE_LIMIT, int, DEFAULT_RATE_LIMIT)
    if rate_limit < 1:
        raise ConfigurationError("rate limit must be at least 1")

    return ServerSettings(
        connection=connection,
        rate_limit_max=rate_limit,
        log_level=(args.log_level or env.get(ENV_LOG_LEVEL) or DEFAULT_LOG_LEVEL).upper(),
    )
