"""Screeps MCP: expose a Screeps server's HTTP and WebSocket API as MCP tools."""

__version__ = "0.1.0"
