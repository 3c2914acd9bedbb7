"""Shared helpers for payload decoding and text formatting."""

from __future__ import annotations

import base64
import logging
import re
import sys
import zlib
from datetime import datetime, timezone
from typing import Any, Iterable

_HTML_TAG_RE = re.compile(r"<[^>]*>")

# Accepts zlib and gzip headers.
_AUTO_WBITS = 32 + zlib.MAX_WBITS


def strip_html_tags(text: str) -> str:
    """Remove markup tags, keeping only their text content."""
    return _HTML_TAG_RE.sub("", text)


def inflate(data: bytes) -> bytes:
    """Decompress a zlib, gzip or raw DEFLATE buffer."""
    try:
        return zlib.decompress(data, _AUTO_WBITS)
    except zlib.error:
        return zlib.decompress(data, -zlib.MAX_WBITS)


def decode_gz_text(text: str) -> str:
    """Decode a ``gz`` prefixed, base64 encoded, compressed string.

    The server writes both ``gz:<base64>`` (memory) and ``gz<base64>``
    (socket frames); the colon is optional since it is not in the base64
    alphabet.
    """
    encoded = text[2:].lstrip(":")
    return inflate(base64.b64decode(encoded)).decode("utf-8")


def maybe_decode_gz(value: Any) -> Any:
    """Return *value* decoded when it is a ``gz:`` string, unchanged otherwise."""
    if isinstance(value, str) and value.startswith("gz:"):
        return decode_gz_text(value)
    return value


def iso_timestamp(millis: int) -> str:
    """Format epoch milliseconds as an ISO 8601 UTC string."""
    moment = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def bulleted(lines: Iterable[str]) -> str:
    return "\n".join(f"- {line}" for line in lines)


def configure_logging(level: str = "INFO") -> None:
    """Send log records to stderr; stdout carries the MCP protocol."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
