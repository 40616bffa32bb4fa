"""Client transport that talks to a server process over its stdin and stdout."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Iterable, Mapping
from typing import Optional, Set

from .errors import TransportError
from .transport import ClientReceiver, ClientTransport

MESSAGE_DELIMITER = b"\n"
READ_LIMIT = 16 * 1024 * 1024


class StdioClientTransport(ClientTransport):
    """Starts a server command and exchanges newline-delimited messages with it."""

    def __init__(
        self,
        command: str,
        args: Iterable[str] = (),
        *,
        env: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.command = command
        self.args = list(args)
        self.env = dict(os.environ)
        if env:
            self.env.update(env)
        self.logger = logger or logging.getLogger(__name__)
        self._receiver: Optional[ClientReceiver] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._closing = False

    async def start(self) -> None:
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env=self.env,
                limit=READ_LIMIT,
            )
        except OSError as exc:
            raise TransportError(f"failed to start command: {exc}") from exc
        assert self._process.stdout is not None
        self._receive_task = asyncio.create_task(self._receive_loop(self._process.stdout))

    async def send(self, message: bytes) -> None:
        if self._process is None or self._process.stdin is None:
            raise TransportError("transport has not been started")
        stdin = self._process.stdin
        try:
            stdin.write(bytes(message) + MESSAGE_DELIMITER)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise TransportError(f"failed to write: {exc}") from exc

    def set_receiver(self, receiver: ClientReceiver) -> None:
        self._receiver = receiver

    async def close(self) -> None:
        """Close the server's stdin, wait for it to exit and stop receiving."""
        process = self._process
        if process is None:
            return
        self._closing = True
        if process.stdin is not None:
            process.stdin.close()
            try:
                await process.stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass
        returncode = await process.wait()
        if returncode != 0:
            raise TransportError(f"command exited with status {returncode}")
        if self._receive_task is not None:
            await asyncio.wait({self._receive_task})

    async def _receive_loop(self, stdout: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stdout.readline()
            except (ValueError, asyncio.LimitOverrunError, OSError) as exc:
                self.logger.error("client receive unexpected error reading input: %s", exc)
                return
            if not line:
                return
            line = line.rstrip(b"\n")
            if not line.strip(b" \t"):
                self.logger.debug("skipping empty message")
                continue
            if self._closing:
                return
            if self._receiver is None:
                self.logger.error("receiver failed: no receiver set")
                continue
            try:
                await self._receiver(line)
            except Exception as exc:
                self.logger.error("receiver failed: %s", exc)