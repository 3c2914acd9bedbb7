#!/usr/bin/env python3
"""Screeps MCP Server.

Exposes a Screeps server's HTTP API and live console stream as MCP tools.

Run with: screeps-mcp --token <token>
Or configure as an MCP server:
{
    "mcpServers": {
        "screeps": {
            "command": "screeps-mcp",
            "env": {"SCREEPS_TOKEN": "...", "SCREEPS_SHARD": "shard3"}
        }
    }
}
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from screeps_mcp.client import ScreepsClient
from screeps_mcp.config import ServerSettings, load_settings
from screeps_mcp.errors import ConfigurationError
from screeps_mcp.rate_limiter import RateLimiter
from screeps_mcp.tools import ToolDispatcher
from screeps_mcp.utils import configure_logging

logger = logging.getLogger(__name__)

INSTRUCTIONS = (
    "You have access to tools for a Screeps game server. "
    "screeps_console_command runs JavaScript in the player's console; its output "
    "shows up in the console, not in the command result.\n\n"
    "To see console output, call screeps_console_stream_start once, run commands, "
    "then poll screeps_console_stream_read. Pass `since` (the last timestamp you "
    "saw, ms since epoch) to only get new lines. The stream keeps the most recent "
    "messages only (bufferSize, default 500) and stops silently if the socket "
    "drops; screeps_connection_status shows whether it is still active.\n\n"
    "Room names look like W1N1 or E12S3. Memory segments are numbered 0-99.\n\n"
    "Errors are prefixed: 'Validation Error' means fix the arguments, "
    "'Rate Limit Error' means wait and retry, 'API Error' means the server "
    "refused or was unreachable."
)


def register_tools(mcp: FastMCP, dispatcher: ToolDispatcher) -> None:
    """Register all Screeps tools with the MCP server."""

    async def _run(name: str, **arguments: Any) -> str:
        # Omitted optionals stay out so the contract defaults apply.
        args = {key: value for key, value in arguments.items() if value is not None}
        result = await dispatcher.call(name, args)
        text = result["content"][0]["text"]
        if result["isError"]:
            raise ToolError(text)
        return text

    # --- Connection ---

    @mcp.tool
    async def screeps_connection_status() -> str:
        """Show connection details for the configured Screeps server.

        Includes the authenticated user and whether the console stream is active.
        """
        return await _run("screeps_connection_status")

    @mcp.tool
    async def screeps_user_info() -> str:
        """Get information about the authenticated user (id, username, GCL, credits)."""
        return await _run("screeps_user_info")

    @mcp.tool
    async def screeps_shards_info() -> str:
        """Retrieve shard information (name, tick, players) from the Screeps server."""
        return await _run("screeps_shards_info")

    # --- Console ---

    @mcp.tool
    async def screeps_console_command(command: str, shard: str | None = None) -> str:
        """Execute a console command on the Screeps server.

        Args:
            command: JavaScript code to execute in the Screeps console.
            shard: Shard to execute the command on (defaults to the configured shard).
        """
        return await _run("screeps_console_command", command=command, shard=shard)

    @mcp.tool
    async def screeps_console_history(limit: int | None = None) -> str:
        """Get recent console messages from Screeps.

        Args:
            limit: Maximum number of messages to retrieve (1-200, default 20).
        """
        return await _run("screeps_console_history", limit=limit)

    @mcp.tool
    async def screeps_console_stream_start(
        shard: str | None = None, bufferSize: int | None = None
    ) -> str:
        """Start a live console stream for the configured connection.

        Calling it again for the same shard is harmless.

        Args:
            shard: Shard to subscribe to (defaults to the configured shard).
            bufferSize: Maximum number of messages to retain (10-5000, default 500).
        """
        return await _run("screeps_console_stream_start", shard=shard, bufferSize=bufferSize)

    @mcp.tool
    async def screeps_console_stream_read(limit: int | None = None, since: int | None = None) -> str:
        """Read buffered messages from the live console stream, newest last.

        Args:
            limit: Maximum number of buffered messages to return (1-500, default 50).
            since: Only return messages newer than this timestamp (ms since epoch).
        """
        return await _run("screeps_console_stream_read", limit=limit, since=since)

    @mcp.tool
    async def screeps_console_stream_stop() -> str:
        """Stop the live console stream. Already buffered messages stay readable."""
        return await _run("screeps_console_stream_stop")

    # --- Rooms ---

    @mcp.tool
    async def screeps_room_objects(roomName: str, shard: str | None = None) -> str:
        """Get objects in a specific room.

        Args:
            roomName: Name of the room (e.g., "W1N1").
            shard: Shard the room is on (defaults to the configured shard).
        """
        return await _run("screeps_room_objects", roomName=roomName, shard=shard)

    @mcp.tool
    async def screeps_room_terrain(roomName: str, shard: str | None = None) -> str:
        """Get encoded terrain data for a specific room.

        Args:
            roomName: Name of the room (e.g., "W1N1").
            shard: Shard the room is on (defaults to the configured shard).
        """
        return await _run("screeps_room_terrain", roomName=roomName, shard=shard)

    # --- Memory ---

    @mcp.tool
    async def screeps_memory_get(path: str, shard: str | None = None) -> str:
        """Read a value from Screeps memory.

        Args:
            path: Memory path to read (e.g., "stats.cpu").
            shard: Shard whose memory to read (defaults to the configured shard).
        """
        return await _run("screeps_memory_get", path=path, shard=shard)

    @mcp.tool
    async def screeps_memory_set(path: str, value: str, shard: str | None = None) -> str:
        """Write a value into Screeps memory.

        Args:
            path: Memory path to write (e.g., "stats.cpu").
            value: Stringified value to store at the path.
            shard: Shard whose memory to write (defaults to the configured shard).
        """
        return await _run("screeps_memory_set", path=path, value=value, shard=shard)

    @mcp.tool
    async def screeps_memory_delete(path: str, shard: str | None = None) -> str:
        """Remove a value from Screeps memory.

        Args:
            path: Memory path to delete (e.g., "stats.cpu").
            shard: Shard whose memory to change (defaults to the configured shard).
        """
        return await _run("screeps_memory_delete", path=path, shard=shard)

    @mcp.tool
    async def screeps_memory_segment_get(segment: int, shard: str | None = None) -> str:
        """Get a memory segment from Screeps.

        Args:
            segment: Memory segment number (0-99).
            shard: Shard to read from (defaults to the configured shard).
        """
        return await _run("screeps_memory_segment_get", segment=segment, shard=shard)

    @mcp.tool
    async def screeps_memory_segment_set(segment: int, data: str, shard: str | None = None) -> str:
        """Set a memory segment in Screeps.

        Args:
            segment: Memory segment number (0-99).
            data: Data to store in the memory segment (up to 100 KB).
            shard: Shard to write to (defaults to the configured shard).
        """
        return await _run("screeps_memory_segment_set", segment=segment, data=data, shard=shard)


def create_server(settings: ServerSettings, client: ScreepsClient | None = None) -> FastMCP:
    """Build the MCP server around one client; the client is closed on shutdown."""
    client = client or ScreepsClient(settings.connection)
    dispatcher = ToolDispatcher(
        client,
        RateLimiter(window=settings.rate_limit_window, max_requests=settings.rate_limit_max),
    )

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[dict[str, Any]]:
        try:
            yield {}
        finally:
            await client.aclose()

    mcp = FastMCP("screeps-mcp", instructions=INSTRUCTIONS, lifespan=lifespan)
    register_tools(mcp, dispatcher)
    return mcp


def main(argv: Sequence[str] | None = None) -> None:
    try:
        settings = load_settings(argv)
    except ConfigurationError as exc:
        print(f"screeps-mcp: configuration error: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    configure_logging(settings.log_level)
    logger.info("Starting Screeps MCP server for %s", settings.connection.redacted())
    create_server(settings).run()


if __name__ == "__main__":
    main()
