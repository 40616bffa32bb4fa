"""Server transport that reads requests from stdin and writes replies to stdout."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, BinaryIO, Optional, Set

from .errors import TransportError
from .transport import ServerReceiver, ServerSessionManager, ServerTransport

MESSAGE_DELIMITER = b"\n"
READ_LIMIT = 16 * 1024 * 1024


class StdioServerTransport(ServerTransport):
    """Serves a single session over a pair of byte streams."""

    def __init__(
        self,
        *,
        reader: Optional[asyncio.StreamReader] = None,
        writer: Optional[BinaryIO] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._reader = reader
        self._writer: Any = writer if writer is not None else sys.stdout.buffer
        self.logger = logger or logging.getLogger(__name__)
        self.session_id = ""
        self._receiver: Optional[ServerReceiver] = None
        self._session_manager: Optional[ServerSessionManager] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._receive_done = asyncio.Event()
        self._pipe_transport: Optional[asyncio.BaseTransport] = None
        self._stopping = False
        self._reply_tasks: Set[asyncio.Task] = set()

    async def run(self) -> None:
        if self._session_manager is None:
            raise TransportError("session manager has not been set")
        self.session_id = self._session_manager.create_session()
        reader = self._reader if self._reader is not None else await self._open_stdin()
        task = asyncio.create_task(self._receive_loop(reader))
        self._receive_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._receive_done.set()
        if not task.cancelled():
            task.result()

    async def send(self, session_id: str, message: bytes) -> None:
        try:
            self._writer.write(bytes(message) + MESSAGE_DELIMITER)
            flush = getattr(self._writer, "flush", None)
            if flush is not None:
                flush()
        except (OSError, ValueError) as exc:
            raise TransportError(f"failed to write: {exc}") from exc

    def set_receiver(self, receiver: ServerReceiver) -> None:
        self._receiver = receiver

    def set_session_manager(self, manager: ServerSessionManager) -> None:
        self._session_manager = manager

    async def shutdown(self, server_done: asyncio.Event) -> None:
        self._stopping = True
        if self._receive_task is not None:
            self._receive_task.cancel()
        if self._pipe_transport is not None:
            self._pipe_transport.close()
        if self._receive_done.is_set() or server_done.is_set():
            return
        waiters = {
            asyncio.create_task(self._receive_done.wait()),
            asyncio.create_task(server_done.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _open_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=READ_LIMIT)
        protocol = asyncio.StreamReaderProtocol(reader)
        self._pipe_transport, _ = await loop.connect_read_pipe(lambda: protocol, sys.stdin.buffer)
        return reader

    async def _receive_loop(self, reader: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await reader.readline()
            except (ValueError, asyncio.LimitOverrunError, OSError) as exc:
                self.logger.error("server receive unexpected error reading input: %s", exc)
                return
            if not line:
                return
            line = line.rstrip(b"\n")
            if self._stopping:
                return
            await self._dispatch(line)

    async def _dispatch(self, line: bytes) -> None:
        if self._receiver is None:
            self.logger.error("receiver failed: no receiver set")
            return
        try:
            reply = await self._receiver(self.session_id, line)
        except Exception as exc:
            self.logger.error("receiver failed: %s", exc)
            return
        if reply is None:
            return
        task = asyncio.create_task(self._forward_reply(self.session_id, reply, self.logger))
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)