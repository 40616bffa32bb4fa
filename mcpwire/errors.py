"""Errors raised by transports and session bookkeeping."""

from __future__ import annotations

from typing import Optional


class TransportError(Exception):
    """Base class for all transport and session errors."""

    default_message = "transport error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)


class LackSessionError(TransportError):
    """The referenced session does not exist or is no longer active."""

    default_message = "lack session"


class SessionClosedError(TransportError):
    """The session has been closed."""

    default_message = "session closed"


class SendEOFError(TransportError):
    """The send queue was closed and holds no more messages."""

    default_message = "send EOF"


class QueueNotOpenedError(TransportError):
    """The session's send queue was used before it was opened."""

    default_message = "queue has not been opened"