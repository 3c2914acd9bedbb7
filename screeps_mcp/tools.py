"""Tool catalog and dispatcher.

Every call runs the same gauntlet before touching the network::

    rate limit -> validate -> sanitize -> client call -> text result

Nothing raises past ``ToolDispatcher.call``: failures come back as a result
with ``isError`` set and a category prefix (``Validation Error``,
``Rate Limit Error``, ``API Error (<tool>)``, ``Error (<tool>)``).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from screeps_mcp.client import ScreepsClient
from screeps_mcp.console_stream import ConsoleMessage
from screeps_mcp.errors import RateLimitError, ScreepsError, TransportError, ValidationError
from screeps_mcp.rate_limiter import RateLimiter
from screeps_mcp.utils import bulleted, iso_timestamp
from screeps_mcp.validation import (
    ConsoleCommandArgs,
    ConsoleHistoryArgs,
    MemoryPathArgs,
    MemorySetArgs,
    NoArgs,
    RoomArgs,
    SegmentArgs,
    SegmentSetArgs,
    StreamReadArgs,
    StreamStartArgs,
    ToolArgs,
    sanitize,
    validate,
)

logger = logging.getLogger(__name__)

# Dispatched calls between two rate limiter cleanups.
CLEANUP_INTERVAL = 100


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    contract: type[ToolArgs]

    def listing(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.contract.model_json_schema(),
        }


TOOL_CATALOG: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec("screeps_connection_status", "Show connection details for the configured Screeps server", NoArgs),
        ToolSpec("screeps_console_command", "Execute a console command on the Screeps server", ConsoleCommandArgs),
        ToolSpec("screeps_console_history", "Get recent console messages from Screeps", ConsoleHistoryArgs),
        ToolSpec("screeps_console_stream_start", "Start a live console stream for the configured connection", StreamStartArgs),
        ToolSpec("screeps_console_stream_read", "Read buffered messages from the live console stream", StreamReadArgs),
        ToolSpec("screeps_console_stream_stop", "Stop the live console stream", NoArgs),
        ToolSpec("screeps_user_info", "Get information about the authenticated user", NoArgs),
        ToolSpec("screeps_shards_info", "Retrieve shard information from the Screeps server", NoArgs),
        ToolSpec("screeps_room_objects", "Get objects in a specific room", RoomArgs),
        ToolSpec("screeps_room_terrain", "Get terrain data for a specific room", RoomArgs),
        ToolSpec("screeps_memory_get", "Read a value from Screeps memory", MemoryPathArgs),
        ToolSpec("screeps_memory_set", "Write a value into Screeps memory", MemorySetArgs),
        ToolSpec("screeps_memory_delete", "Remove a value from Screeps memory", MemoryPathArgs),
        ToolSpec("screeps_memory_segment_get", "Get a memory segment from Screeps", SegmentArgs),
        ToolSpec("screeps_memory_segment_set", "Set a memory segment in Screeps", SegmentSetArgs),
    )
}


def text_result(text: str, is_error: bool = False) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def format_validation_error(error: ValidationError) -> dict[str, Any]:
    return text_result("Validation Error:\n" + "\n".join(str(issue) for issue in error.issues), True)


def format_api_error(error: Exception, context: str) -> dict[str, Any]:
    return text_result(f"API Error ({context}): {error}", True)


def format_generic_error(error: Exception, context: str) -> dict[str, Any]:
    return text_result(f"Error ({context}): {error}", True)


def format_console_messages(messages: list[ConsoleMessage]) -> str:
    if not messages:
        return "No console messages available."
    return "\n".join(
        f"{iso_timestamp(message.timestamp)} [{message.shard}] ({message.kind.value.upper()}) {message.line}"
        for message in messages
    )


def _pretty(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


class ToolDispatcher:
    """Routes tool calls for one ``ScreepsClient``."""

    def __init__(self, client: ScreepsClient, rate_limiter: RateLimiter | None = None) -> None:
        self.client = client
        self.rate_limiter = rate_limiter or RateLimiter()
        self._calls = 0
        self._handlers: dict[str, Callable[[Any], Awaitable[str]]] = {
            "screeps_connection_status": self._connection_status,
            "screeps_console_command": self._console_command,
            "screeps_console_history": self._console_history,
            "screeps_console_stream_start": self._console_stream_start,
            "screeps_console_stream_read": self._console_stream_read,
            "screeps_console_stream_stop": self._console_stream_stop,
            "screeps_user_info": self._user_info,
            "screeps_shards_info": self._shards_info,
            "screeps_room_objects": self._room_objects,
            "screeps_room_terrain": self._room_terrain,
            "screeps_memory_get": self._memory_get,
            "screeps_memory_set": self._memory_set,
            "screeps_memory_delete": self._memory_delete,
            "screeps_memory_segment_get": self._memory_segment_get,
            "screeps_memory_segment_set": self._memory_segment_set,
        }

    def list_tools(self) -> list[dict[str, Any]]:
        return [spec.listing() for spec in TOOL_CATALOG.values()]

    async def call(self, name: str, raw_args: Any = None) -> dict[str, Any]:
        """Run one tool call and return an MCP ``CallToolResult`` dict."""
        spec = TOOL_CATALOG.get(name)
        handler = self._handlers.get(name)
        if spec is None or handler is None:
            return text_result(f"Unknown tool: {name}", True)

        self._calls += 1
        if self._calls % CLEANUP_INTERVAL == 0:
            self.rate_limiter.cleanup()

        key = f"tool:{name}"
        if not self.rate_limiter.allow(key):
            logger.warning("Rate limit hit for %s", key)
            return text_result(f"Rate Limit Error: {RateLimitError(key)}", True)

        try:
            args = sanitize(validate(spec.contract, raw_args))
        except ValidationError as exc:
            return format_validation_error(exc)

        try:
            return text_result(await handler(args))
        except TransportError as exc:
            logger.warning("%s failed: %s", name, exc)
            return format_api_error(exc, name)
        except ScreepsError as exc:
            return format_generic_error(exc, name)
        except Exception as exc:
            logger.exception("%s crashed", name)
            return format_generic_error(exc, name)

    # --- Connection ---

    async def _connection_status(self, args: NoArgs) -> str:
        summary = self.client.connection_summary()
        lines = [
            f"Connection name: {summary['name']}",
            f"Host: {'https' if summary['secure'] else 'http'}://{summary['host']}",
            f"Default shard: {summary['shard']}",
            f"Authenticated user: {summary['authenticated_user'] or 'unknown'}",
            f"Token available: {'yes' if summary['has_token'] else 'no'}",
        ]
        stream = summary["stream"]
        if stream is None:
            lines.append("Console stream: not started")
        else:
            lines += [
                "Console stream:",
                f"  active: {'yes' if stream.is_active else 'no'}",
                f"  shard: {stream.shard}",
                f"  buffered messages: {stream.buffered_count}/{stream.max_buffered_count}",
            ]
        return "\n".join(lines)

    async def _user_info(self, args: NoArgs) -> str:
        return f"User Info:\n{_pretty(await self.client.get_user_info())}"

    async def _shards_info(self, args: NoArgs) -> str:
        shards = await self.client.get_shard_info()
        if not shards:
            return "No shard information available from the server."
        rows = []
        for shard in shards:
            parts = [str(shard.get("name", "?"))]
            if isinstance(shard.get("tick"), (int, float)):
                parts.append(f"tick {shard['tick']}")
            if isinstance(shard.get("players"), (int, float)):
                parts.append(f"{shard['players']} players")
            if isinstance(shard.get("uptime"), (int, float)):
                parts.append(f"uptime {shard['uptime']}")
            rows.append(", ".join(parts))
        return f"Shards:\n{bulleted(rows)}"

    # --- Console ---

    async def _console_command(self, args: ConsoleCommandArgs) -> str:
        result = await self.client.execute_console_command(args.command, args.shard)
        timestamp = result.get("timestamp", "n/a")
        return f"Console command executed successfully. Timestamp: {timestamp}"

    async def _console_history(self, args: ConsoleHistoryArgs) -> str:
        messages = await self.client.get_console_history(args.limit)
        return (
            f"Console History (last {len(messages)} messages):\n\n"
            f"{format_console_messages(messages)}"
        )

    async def _console_stream_start(self, args: StreamStartArgs) -> str:
        before = self.client.console_stream_state()
        state = await self.client.start_console_stream(args.shard, args.buffer_size)
        if before.is_active and before.shard == state.shard:
            return (
                f"Console stream already active on shard {state.shard}. "
                f"Buffering up to {state.max_buffered_count} messages."
            )
        return (
            f"Console stream started on shard {state.shard}. "
            f"Buffering up to {state.max_buffered_count} messages."
        )

    async def _console_stream_read(self, args: StreamReadArgs) -> str:
        messages = self.client.read_console_stream(args.limit, args.since)
        text = format_console_messages(messages)
        if not self.client.console_stream_state().is_active:
            text += "\n(Console stream is not active; showing buffered messages only.)"
        return text

    async def _console_stream_stop(self, args: NoArgs) -> str:
        await self.client.stop_console_stream()
        return "Console stream stopped."

    # --- Rooms ---

    async def _room_objects(self, args: RoomArgs) -> str:
        objects = await self.client.get_room_objects(args.room_name, args.shard)
        return f"Room Objects in {args.room_name} ({len(objects)} objects):\n{_pretty(objects)}"

    async def _room_terrain(self, args: RoomArgs) -> str:
        terrain = await self.client.get_room_terrain(args.room_name, args.shard)
        return f"Room Terrain for {args.room_name}:\n{_pretty(terrain)}"

    # --- Memory ---

    async def _memory_get(self, args: MemoryPathArgs) -> str:
        value = await self.client.get_memory(args.path, args.shard)
        if value is None:
            return f"Memory path {args.path} is empty."
        return f"Memory value at {args.path}:\n{value}"

    async def _memory_set(self, args: MemorySetArgs) -> str:
        await self.client.set_memory(args.path, args.value, args.shard)
        return f"Memory path {args.path} updated successfully."

    async def _memory_delete(self, args: MemoryPathArgs) -> str:
        await self.client.delete_memory(args.path, args.shard)
        return f"Memory path {args.path} deleted successfully."

    async def _memory_segment_get(self, args: SegmentArgs) -> str:
        data = await self.client.get_memory_segment(args.segment, args.shard)
        return f"Memory Segment {args.segment}:\n{data}"

    async def _memory_segment_set(self, args: SegmentSetArgs) -> str:
        await self.client.set_memory_segment(args.segment, args.data, args.shard)
        return f"Memory segment {args.segment} updated successfully."
