"""Input contracts for every tool, plus string sanitizers.

Each tool's arguments are a pydantic model. ``validate`` turns raw call
arguments into that model or raises ``ValidationError`` listing every bad
field. ``sanitize`` then scrubs the string fields that go over the wire.
Sanitizing is a second line of defence; the contracts are the gate.
"""

from __future__ import annotations

import re
from typing import Any, Callable, ClassVar, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from screeps_mcp.errors import FieldIssue, ValidationError

ROOM_NAME_PATTERN = r"^[EW]\d+[NS]\d+$"
SHARD_PATTERN = r"^[A-Za-z0-9_-]+$"

# Server-side limits: 2 MB of memory, 100 KB per segment.
MAX_MEMORY_VALUE = 2 * 1024 * 1024
MAX_SEGMENT_DATA = 100 * 1024

_SCRIPT_TAG_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JS_PROTOCOL_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"\bon\w+\s*=", re.IGNORECASE)
_CODE_INJECTION_RE = re.compile(r"require\s*\(|process\.|global\.", re.IGNORECASE)
_PATH_TRAVERSAL_RE = re.compile(r"\.\.")
_PATH_SPECIAL_RE = re.compile(r'[<>:"|?*]')


def _until_stable(text: str, *patterns: re.Pattern[str]) -> str:
    # Removing one match can splice a new one together ("requrequire(ire(").
    previous = None
    while previous != text:
        previous = text
        for pattern in patterns:
            text = pattern.sub("", text)
    return text


def sanitize_string(text: str) -> str:
    """Strip script tags, ``javascript:`` prefixes and inline event handlers."""
    return _until_stable(text, _SCRIPT_TAG_RE, _JS_PROTOCOL_RE, _EVENT_HANDLER_RE).strip()


def sanitize_payload(text: str) -> str:
    """Strip script tags only; memory values and segment data are otherwise opaque."""
    return _until_stable(text, _SCRIPT_TAG_RE)


def sanitize_memory_path(path: str) -> str:
    """Strip ``..`` sequences and path-special characters."""
    return _until_stable(path, _PATH_TRAVERSAL_RE, _PATH_SPECIAL_RE).strip()


def sanitize_console_command(command: str) -> str:
    """Strip ``require(``, ``process.`` and ``global.`` from console code."""
    return _until_stable(command, _CODE_INJECTION_RE).strip()


Sanitizer = Callable[[str], str]

_Shard = Optional[str]


def _shard_field() -> Any:
    return Field(
        default=None,
        min_length=1,
        max_length=32,
        pattern=SHARD_PATTERN,
        description="Shard name (optional, defaults to the configured shard)",
    )


class ToolArgs(BaseModel):
    """Base for tool contracts."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # Field name -> sanitizer applied after validation.
    sanitizers: ClassVar[dict[str, Sanitizer]] = {}


class NoArgs(ToolArgs):
    pass


class ConsoleCommandArgs(ToolArgs):
    command: str = Field(
        min_length=1, max_length=10_000, description="JavaScript code to execute in the Screeps console"
    )
    shard: _Shard = _shard_field()

    sanitizers = {"command": sanitize_console_command, "shard": sanitize_string}


class ConsoleHistoryArgs(ToolArgs):
    limit: int = Field(default=20, ge=1, le=200, description="Maximum number of messages to retrieve")


class StreamStartArgs(ToolArgs):
    shard: _Shard = _shard_field()
    buffer_size: Optional[int] = Field(
        default=None,
        alias="bufferSize",
        ge=10,
        le=5000,
        description="Maximum number of messages to retain in the buffer (default 500)",
    )

    sanitizers = {"shard": sanitize_string}


class StreamReadArgs(ToolArgs):
    limit: int = Field(default=50, ge=1, le=500, description="Maximum number of buffered messages to return")
    since: Optional[int] = Field(
        default=None, ge=0, description="Only return messages newer than this timestamp (ms since epoch)"
    )


class RoomArgs(ToolArgs):
    room_name: str = Field(
        alias="roomName", pattern=ROOM_NAME_PATTERN, description='Name of the room (e.g., "W1N1")'
    )
    shard: _Shard = _shard_field()

    sanitizers = {"shard": sanitize_string}


class MemoryPathArgs(ToolArgs):
    path: str = Field(min_length=1, max_length=500, description='Memory path (e.g., "stats.cpu")')
    shard: _Shard = _shard_field()

    sanitizers = {"path": sanitize_memory_path, "shard": sanitize_string}


class MemorySetArgs(MemoryPathArgs):
    value: str = Field(max_length=MAX_MEMORY_VALUE, description="Stringified value to store at the path")

    sanitizers = {**MemoryPathArgs.sanitizers, "value": sanitize_payload}


class SegmentArgs(ToolArgs):
    segment: int = Field(ge=0, le=99, description="Memory segment number (0-99)")
    shard: _Shard = _shard_field()

    sanitizers = {"shard": sanitize_string}


class SegmentSetArgs(SegmentArgs):
    data: str = Field(max_length=MAX_SEGMENT_DATA, description="Data to store in the memory segment")

    sanitizers = {**SegmentArgs.sanitizers, "data": sanitize_payload}


ArgsT = TypeVar("ArgsT", bound=ToolArgs)


def _issue_path(location: tuple[Any, ...]) -> str:
    return ".".join(str(part) for part in location)


def validate(contract: type[ArgsT], raw: Any) -> ArgsT:
    """Validate raw call arguments against *contract*.

    Raises:
        ValidationError: Listing every violated field with its reason.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError([FieldIssue("", f"Expected an object, got {type(raw).__name__}")])
    try:
        return contract.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(
            [FieldIssue(_issue_path(error["loc"]), error["msg"]) for error in exc.errors()]
        ) from exc


def sanitize(args: ArgsT) -> ArgsT:
    """Return a copy of *args* with its declared string fields sanitized.

    Raises:
        ValidationError: If a required field is empty once sanitized.
    """
    updates: dict[str, str] = {}
    for name, sanitizer in args.sanitizers.items():
        value = getattr(args, name)
        if isinstance(value, str):
            updates[name] = sanitizer(value)

    fields = type(args).model_fields
    issues = [
        FieldIssue(fields[name].alias or name, "Value is empty after sanitization")
        for name, value in updates.items()
        if not value and getattr(args, name) and fields[name].is_required()
    ]
    if issues:
        raise ValidationError(issues)
    return args.model_copy(update=updates)
