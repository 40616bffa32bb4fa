"""Abstract transports that carry JSON-RPC messages between peers."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Optional, Type

_log = logging.getLogger(__name__)

Message = bytes
"""A single serialized JSON-RPC message."""

ClientReceiver = Callable[[bytes], Awaitable[None]]
"""Handles a message that arrived at a client."""

Reply = Awaitable[bytes]
"""Resolves to the response for a request; empty bytes mean handling failed."""

ServerReceiver = Callable[[str, bytes], Awaitable[Optional[Reply]]]
"""Handles a message that arrived at a server for a session.

Returns None when nothing is to be sent back (notifications and responses),
otherwise an awaitable yielding the reply message.
"""


class ClientTransport(ABC):
    """Client side of a transport. Usable as an async context manager."""

    @abstractmethod
    async def start(self) -> None:
        """Open the connection to the server."""

    @abstractmethod
    async def send(self, message: bytes) -> None:
        """Transmit one message to the server."""

    @abstractmethod
    def set_receiver(self, receiver: ClientReceiver) -> None:
        """Set the handler for messages coming from the server."""

    @abstractmethod
    async def close(self) -> None:
        """Terminate the connection."""

    async def __aenter__(self) -> "ClientTransport":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.close()


class ServerSessionManager(ABC):
    """What a server transport needs from the session bookkeeping."""

    @abstractmethod
    def create_session(self) -> str:
        """Create a session and return its id."""

    @abstractmethod
    def open_message_queue_for_send(self, session_id: str) -> None:
        """Open the outgoing queue of a session."""

    @abstractmethod
    async def enqueue_message_for_send(self, session_id: str, message: bytes) -> None:
        """Queue a message for delivery to the session's client."""

    @abstractmethod
    async def dequeue_message_for_send(self, session_id: str) -> bytes:
        """Wait for the next message queued for the session's client."""

    @abstractmethod
    def close_session(self, session_id: str) -> None:
        """Close one session."""

    @abstractmethod
    def close_all_sessions(self) -> None:
        """Close every session."""


class ServerTransport(ABC):
    """Server side of a transport."""

    @abstractmethod
    async def run(self) -> None:
        """Serve until shut down."""

    @abstractmethod
    async def send(self, session_id: str, message: bytes) -> None:
        """Transmit one message to the client of a session."""

    @abstractmethod
    def set_receiver(self, receiver: ServerReceiver) -> None:
        """Set the handler for messages coming from clients."""

    @abstractmethod
    def set_session_manager(self, manager: ServerSessionManager) -> None:
        """Set the session bookkeeping used by this transport."""

    @abstractmethod
    async def shutdown(self, server_done: asyncio.Event) -> None:
        """Stop receiving, wait for ``server_done``, then release all sessions.

        Callers bound the total time with ``asyncio.wait_for``.
        """

    async def _forward_reply(
        self,
        session_id: str,
        reply: Reply,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Wait for a reply and send it to the session, logging failures."""
        log = logger or _log
        message = await reply
        if not message:
            log.error("handle request fail")
            return
        try:
            await self.send(session_id, message)
        except Exception as exc:  # delivery failures are reported, not raised
            log.error("failed to send message: %s", exc)