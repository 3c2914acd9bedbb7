"""
Tests for tool argument contracts and the string sanitizers.
"""

import pytest

from screeps_mcp.errors import ValidationError
from screeps_mcp.validation import (
    MAX_SEGMENT_DATA,
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
    sanitize,
    sanitize_console_command,
    sanitize_memory_path,
    sanitize_payload,
    sanitize_string,
    validate,
)


def issue_paths(exc_info: pytest.ExceptionInfo[ValidationError]) -> set[str]:
    return {issue.path for issue in exc_info.value.issues}


# ============================================================================
# CONTRACTS
# ============================================================================


class TestValidate:
    @pytest.mark.parametrize("room", ["W1N1", "E12S3", "W0N0", "E123N456"])
    def test_accepts_room_names(self, room):
        args = validate(RoomArgs, {"roomName": room})

        assert args.room_name == room
        assert args.shard is None

    @pytest.mark.parametrize("room", ["invalid", "w1n1", "N1W1", "W1N", "W1N1x", ""])
    def test_rejects_room_names(self, room):
        with pytest.raises(ValidationError) as exc_info:
            validate(RoomArgs, {"roomName": room})

        assert issue_paths(exc_info) == {"roomName"}

    def test_missing_room_is_reported(self):
        with pytest.raises(ValidationError) as exc_info:
            validate(RoomArgs, {})

        assert issue_paths(exc_info) == {"roomName"}
        assert "Field required" in str(exc_info.value)

    @pytest.mark.parametrize("segment", [-1, 100, 150])
    def test_rejects_out_of_range_segment(self, segment):
        with pytest.raises(ValidationError) as exc_info:
            validate(SegmentArgs, {"segment": segment})

        assert issue_paths(exc_info) == {"segment"}

    def test_segment_bounds_inclusive(self):
        assert validate(SegmentArgs, {"segment": 0}).segment == 0
        assert validate(SegmentArgs, {"segment": 99}).segment == 99

    def test_every_issue_listed(self):
        with pytest.raises(ValidationError) as exc_info:
            validate(SegmentSetArgs, {"segment": 150, "shard": "bad shard!"})

        assert issue_paths(exc_info) == {"segment", "data", "shard"}
        assert "at 'segment'" in str(exc_info.value)

    def test_segment_data_size_cap(self):
        with pytest.raises(ValidationError) as exc_info:
            validate(SegmentSetArgs, {"segment": 1, "data": "x" * (MAX_SEGMENT_DATA + 1)})

        assert issue_paths(exc_info) == {"data"}

    def test_defaults(self):
        assert validate(ConsoleHistoryArgs, {}).limit == 20
        read = validate(StreamReadArgs, None)
        assert read.limit == 50
        assert read.since is None
        assert validate(StreamStartArgs, {}).buffer_size is None

    @pytest.mark.parametrize("limit", [0, 201])
    def test_history_limit_range(self, limit):
        with pytest.raises(ValidationError):
            validate(ConsoleHistoryArgs, {"limit": limit})

    def test_stream_read_rejects_negative_since(self):
        with pytest.raises(ValidationError) as exc_info:
            validate(StreamReadArgs, {"since": -5})

        assert issue_paths(exc_info) == {"since"}

    @pytest.mark.parametrize("size", [9, 5001])
    def test_buffer_size_range(self, size):
        with pytest.raises(ValidationError) as exc_info:
            validate(StreamStartArgs, {"bufferSize": size})

        assert issue_paths(exc_info) == {"bufferSize"}

    def test_buffer_size_by_alias(self):
        assert validate(StreamStartArgs, {"bufferSize": 200}).buffer_size == 200

    def test_command_required_and_bounded(self):
        with pytest.raises(ValidationError):
            validate(ConsoleCommandArgs, {"command": ""})
        with pytest.raises(ValidationError):
            validate(ConsoleCommandArgs, {"command": "x" * 10_001})

    def test_unknown_fields_ignored(self):
        assert isinstance(validate(NoArgs, {"extra": 1}), NoArgs)

    def test_non_object_rejected(self):
        with pytest.raises(ValidationError, match="Expected an object, got list"):
            validate(NoArgs, [1, 2])


# ============================================================================
# SANITIZERS
# ============================================================================


class TestSanitizers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("<script>alert(1)</script>hello", "hello"),
            ("<SCRIPT src=x>evil()</SCRIPT> ok", "ok"),
            ("javascript:alert(1)", "alert(1)"),
            ("onclick=steal()", "steal()"),
            ("plain text", "plain text"),
            ("  padded  ", "padded"),
        ],
    )
    def test_sanitize_string(self, raw, expected):
        assert sanitize_string(raw) == expected

    def test_sanitize_string_leaves_words_starting_with_on(self):
        assert sanitize_string("one two") == "one two"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("../secret", "/secret"),
            ("..../x", "/x"),
            ('a<b>:c"d|e?f*g', "abcdefg"),
            ("stats.cpu", "stats.cpu"),
        ],
    )
    def test_sanitize_memory_path(self, raw, expected):
        assert sanitize_memory_path(raw) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("require('fs')", "'fs')"),
            ("require ('fs')", "'fs')"),
            ("process.exit()", "exit()"),
            ("global.Memory", "Memory"),
            ("Game.time", "Game.time"),
        ],
    )
    def test_sanitize_console_command(self, raw, expected):
        assert sanitize_console_command(raw) == expected

    def test_spliced_patterns_are_removed(self):
        assert sanitize_console_command("requrequire(ire(") == ""
        assert sanitize_string("javajavascript:script:x") == "x"

    @pytest.mark.parametrize(
        "sanitizer, raw",
        [
            (sanitize_string, "<script>a</script>javascript:onload=x"),
            (sanitize_memory_path, "a/../..b<c>"),
            (sanitize_console_command, "process.require(global.x"),
        ],
    )
    def test_idempotent(self, sanitizer, raw):
        once = sanitizer(raw)

        assert sanitizer(once) == once


class TestSanitize:
    def test_returns_sanitized_copy(self):
        args = validate(MemorySetArgs, {"path": "../stats", "value": "<script>x</script>42"})

        clean = sanitize(args)

        assert clean.path == "/stats"
        assert clean.value == "42"
        assert args.path == "../stats"

    def test_command_sanitized(self):
        args = sanitize(validate(ConsoleCommandArgs, {"command": "process.exit()", "shard": "shard1"}))

        assert args.command == "exit()"
        assert args.shard == "shard1"

    def test_required_field_emptied_is_rejected(self):
        args = validate(MemoryPathArgs, {"path": "...."})

        with pytest.raises(ValidationError) as exc_info:
            sanitize(args)

        assert issue_paths(exc_info) == {"path"}
        assert "empty after sanitization" in str(exc_info.value)

    def test_value_emptied_is_rejected(self):
        args = validate(MemorySetArgs, {"path": "a", "value": "<script>x</script>"})

        with pytest.raises(ValidationError) as exc_info:
            sanitize(args)

        assert issue_paths(exc_info) == {"value"}

    def test_value_empty_from_the_start_is_kept(self):
        args = sanitize(validate(MemorySetArgs, {"path": "a", "value": ""}))

        assert args.value == ""

    def test_contract_without_sanitizers(self):
        args = validate(ConsoleHistoryArgs, {"limit": 3})

        assert sanitize(args) == args

    def test_payloads_keep_whitespace_and_attribute_like_text(self):
        args = sanitize(
            validate(SegmentSetArgs, {"segment": 3, "data": "  x=1; onboard=2 javascript:y\n"})
        )

        assert args.data == "  x=1; onboard=2 javascript:y\n"

    def test_memory_value_keeps_surrounding_whitespace(self):
        args = sanitize(validate(MemorySetArgs, {"path": "a", "value": " {\"on\": 1} "}))

        assert args.value == ' {"on": 1} '


def test_sanitize_payload_only_strips_script_tags():
    assert sanitize_payload(" a<script>b</script>c onload=d ") == " ac onload=d "
