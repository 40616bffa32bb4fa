"""Asyncio transports (stdio, SSE, streamable HTTP client) and session management for MCP peers."""

__version__ = "0.1.0"

__all__ = [
    "errors",
    "transport",
    "session",
    "stdio_client",
    "stdio_server",
    "sse_client",
    "sse_server",
    "streamable_http_client",
]