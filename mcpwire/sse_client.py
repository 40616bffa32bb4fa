"""Client transport for the HTTP + server-sent events protocol."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Optional
from urllib.parse import urljoin, urlsplit

import aiohttp

from .errors import TransportError
from .transport import ClientReceiver, ClientTransport


class SSEClientTransport(ClientTransport):
    """Listens on an SSE stream and posts messages to the announced endpoint."""

    def __init__(
        self,
        server_url: str,
        *,
        receive_timeout: float = 30.0,
        endpoint_timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        try:
            urlsplit(server_url)
        except ValueError as exc:
            raise TransportError(f"failed to parse server URL: {exc}") from exc
        self.server_url = server_url
        self.message_endpoint: Optional[str] = None
        self.receive_timeout = receive_timeout
        self.endpoint_timeout = endpoint_timeout
        self.logger = logger or logging.getLogger(__name__)
        self._session = session
        self._owns_session = False
        self._receiver: Optional[ClientReceiver] = None
        self._endpoint_ready = asyncio.Event()
        self._stream_task: Optional[asyncio.Task] = None
        self._closing = False

    async def start(self) -> None:
        """Connect the event stream and wait until the endpoint is announced."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
            self._owns_session = True
        stream_task = asyncio.create_task(self._run_stream())
        self._stream_task = stream_task
        waiter = asyncio.create_task(self._endpoint_ready.wait())
        try:
            done, _ = await asyncio.wait(
                {waiter, stream_task},
                timeout=self.endpoint_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
        if self._endpoint_ready.is_set():
            return
        if stream_task in done:
            error = None if stream_task.cancelled() else stream_task.exception()
            await self._abort()
            if error is not None:
                raise TransportError(f"error in SSE stream: {error}") from error
            raise TransportError("SSE stream ended before the endpoint was received")
        await self._abort()
        raise TransportError("timeout waiting for endpoint")

    async def handle_event(self, event: str, data: str) -> None:
        """Act on one complete SSE event."""
        if event == "endpoint":
            try:
                endpoint = urljoin(self.server_url, data)
            except ValueError as exc:
                self.logger.error("error parsing endpoint URL: %s", exc)
                return
            self.logger.debug("received endpoint: %s", endpoint)
            self.message_endpoint = endpoint
            self._endpoint_ready.set()
        elif event == "message":
            if self._receiver is None:
                self.logger.error("error receive message: no receiver set")
                return
            try:
                await asyncio.wait_for(
                    self._receiver(data.encode("utf-8")), timeout=self.receive_timeout
                )
            except Exception as exc:
                self.logger.error("error receive message: %r", exc)

    async def send(self, message: bytes) -> None:
        if self.message_endpoint is None or self._session is None:
            raise TransportError("message endpoint has not been received")
        self.logger.debug("sending message: %r to %s", message, self.message_endpoint)
        try:
            async with self._session.post(
                self.message_endpoint,
                data=bytes(message),
                headers={"Content-Type": "application/json"},
            ) as resp:
                if not 200 <= resp.status < 300:
                    raise TransportError(
                        f"unexpected status code: {resp.status}, status: {resp.reason}"
                    )
        except aiohttp.ClientError as exc:
            raise TransportError(f"failed to send message: {exc}") from exc

    def set_receiver(self, receiver: ClientReceiver) -> None:
        self._receiver = receiver

    async def close(self) -> None:
        self._closing = True
        await self._abort()

    async def _abort(self) -> None:
        task = self._stream_task
        if task is not None:
            task.cancel()
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                self.logger.debug("SSE stream ended with: %s", task.exception())
            self._stream_task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False

    async def _run_stream(self) -> None:
        assert self._session is not None
        headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
        try:
            async with self._session.get(self.server_url, headers=headers) as resp:
                if resp.status != 200:
                    raise TransportError(
                        f"unexpected status code: {resp.status}, status: {resp.reason}"
                    )
                await self._read_stream(resp.content.iter_any())
        except aiohttp.ClientError as exc:
            raise TransportError(f"failed to connect to SSE stream: {exc}") from exc

    async def _read_stream(self, chunks: AsyncIterator[bytes]) -> None:
        event = data = ""
        buffer = b""
        try:
            async for chunk in chunks:
                buffer += chunk
                *lines, buffer = buffer.split(b"\n")
                for raw in lines:
                    line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                    if not line:
                        if event and data:
                            await self.handle_event(event, data)
                            event = data = ""
                        continue
                    if line.startswith("event:"):
                        event = line[len("event:"):].strip()
                    elif line.startswith("data:"):
                        data = line[len("data:"):].strip()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            if not self._closing:
                self.logger.error("SSE stream error: %s", exc)
            return
        if event and data:
            await self.handle_event(event, data)