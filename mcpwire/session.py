"""Per-session state and the manager that tracks server sessions."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Iterator
from typing import Any, Deque, Dict, Optional, Set, Tuple

from .errors import LackSessionError, QueueNotOpenedError, SendEOFError, SessionClosedError
from .transport import ServerSessionManager

SEND_QUEUE_SIZE = 64
DETECTION_ATTEMPTS = 3
DEFAULT_HEARTBEAT_INTERVAL = 60.0

Detection = Callable[[str], Awaitable[Any]]
"""Probes a session; raises when the client does not answer."""


class _SendQueue:
    """Bounded FIFO that can be closed; readers drain it before seeing EOF."""

    def __init__(self, maxsize: int) -> None:
        self._maxsize = maxsize
        self._items: Deque[bytes] = deque()
        self._getters: Deque[asyncio.Future] = deque()
        self._putters: Deque[asyncio.Future] = deque()
        self._closed = False

    @staticmethod
    async def _wait(waiters: Deque[asyncio.Future]) -> None:
        fut = asyncio.get_running_loop().create_future()
        waiters.append(fut)
        try:
            await fut
        finally:
            try:
                waiters.remove(fut)
            except ValueError:
                pass

    @staticmethod
    def _wake(waiters: Deque[asyncio.Future]) -> None:
        while waiters:
            fut = waiters.popleft()
            if not fut.done():
                fut.set_result(None)

    async def put(self, item: bytes) -> None:
        while not self._closed and len(self._items) >= self._maxsize:
            await self._wait(self._putters)
        if self._closed:
            raise SessionClosedError("session already closed")
        self._items.append(item)
        self._wake(self._getters)

    async def get(self) -> bytes:
        while not self._items:
            if self._closed:
                raise SendEOFError()
            await self._wait(self._getters)
        item = self._items.popleft()
        self._wake(self._putters)
        return item

    def close(self) -> None:
        self._closed = True
        self._wake(self._getters)
        self._wake(self._putters)


class SessionState:
    """Everything the server remembers about one client session."""

    def __init__(self) -> None:
        self.last_active_at: float = time.monotonic()
        self.client_info: Any = None
        self.client_capabilities: Any = None
        self.pending_responses: Dict[str, asyncio.Future] = {}
        self.subscribed_resources: Set[str] = set()
        self.received_init_request = False
        self.ready = False
        self.closed = False
        self._request_ids = itertools.count(1)
        self._send_queue: Optional[_SendQueue] = None

    def set_client_info(self, client_info: Any, client_capabilities: Any) -> None:
        """Remember what the client announced in its initialize request."""
        self.client_info = client_info
        self.client_capabilities = client_capabilities

    def mark_received_init_request(self) -> None:
        self.received_init_request = True

    def mark_ready(self) -> None:
        self.ready = True

    def next_request_id(self) -> int:
        """Return a fresh id for a server-to-client request."""
        return next(self._request_ids)

    def touch(self) -> None:
        """Record activity on the session now."""
        self.last_active_at = time.monotonic()

    def open_send_queue(self) -> None:
        """Create the outgoing queue if it does not exist yet."""
        if self._send_queue is None:
            self._send_queue = _SendQueue(SEND_QUEUE_SIZE)
            if self.closed:
                self._send_queue.close()

    async def enqueue(self, message: bytes) -> None:
        """Queue a message, waiting while the queue is full."""
        if self.closed:
            raise SessionClosedError("session already closed")
        if self._send_queue is None:
            raise QueueNotOpenedError()
        await self._send_queue.put(message)

    async def dequeue(self) -> bytes:
        """Wait for the next queued message; SendEOFError once closed and drained."""
        if self._send_queue is None:
            raise QueueNotOpenedError()
        return await self._send_queue.get()

    def close(self) -> None:
        self.closed = True
        if self._send_queue is not None:
            self._send_queue.close()


class SessionManager(ServerSessionManager):
    """Tracks active and closed sessions and expires dead ones."""

    def __init__(
        self,
        detection: Optional[Detection] = None,
        *,
        max_idle_time: float = 0.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.detection = detection
        self.max_idle_time = max_idle_time
        self.logger = logger or logging.getLogger(__name__)
        self._active: Dict[str, SessionState] = {}
        self._closed: Set[str] = set()
        self._stop = asyncio.Event()

    def create_session(self) -> str:
        session_id = str(uuid.uuid4())
        self._active[session_id] = SessionState()
        return session_id

    def is_active_session(self, session_id: str) -> bool:
        return session_id in self._active

    def is_closed_session(self, session_id: str) -> bool:
        return session_id in self._closed

    def get_session(self, session_id: str) -> Optional[SessionState]:
        """Return the active session with this id, or None."""
        if not session_id:
            return None
        return self._active.get(session_id)

    def _require(self, session_id: str) -> SessionState:
        state = self.get_session(session_id)
        if state is None:
            raise LackSessionError()
        return state

    def open_message_queue_for_send(self, session_id: str) -> None:
        self._require(session_id).open_send_queue()

    async def enqueue_message_for_send(self, session_id: str, message: bytes) -> None:
        await self._require(session_id).enqueue(message)

    async def dequeue_message_for_send(self, session_id: str) -> bytes:
        return await self._require(session_id).dequeue()

    def update_session_last_active(self, session_id: str) -> None:
        state = self._active.get(session_id)
        if state is not None:
            state.touch()

    def close_session(self, session_id: str) -> None:
        state = self._active.pop(session_id, None)
        if state is None:
            return
        state.close()
        self._closed.add(session_id)

    def close_all_sessions(self) -> None:
        for session_id in list(self._active):
            self.close_session(session_id)

    async def check_sessions(self) -> None:
        """Close sessions that idled too long or fail every liveness probe."""
        now = time.monotonic()
        for session_id, state in list(self._active.items()):
            if self.max_idle_time and now - state.last_active_at > self.max_idle_time:
                self.logger.info("session expire, session id: %s", session_id)
                self.close_session(session_id)
                continue
            if self.detection is None:
                continue
            error: Optional[BaseException] = None
            for _ in range(DETECTION_ATTEMPTS):
                try:
                    await self.detection(session_id)
                    break
                except Exception as exc:
                    error = exc
            else:
                self.logger.info(
                    "session detection fail, session id: %s, fail reason: %r", session_id, error
                )
                self.close_session(session_id)

    async def run_heartbeat(self, interval: float = DEFAULT_HEARTBEAT_INTERVAL) -> None:
        """Check sessions every ``interval`` seconds until stopped."""
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.check_sessions()

    def stop_heartbeat(self) -> None:
        self._stop.set()

    def sessions(self) -> Iterator[Tuple[str, SessionState]]:
        """Iterate over a snapshot of the active sessions."""
        yield from list(self._active.items())

    def is_empty(self) -> bool:
        return not self._active