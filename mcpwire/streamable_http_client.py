"""Client transport for the streamable HTTP protocol."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, Coroutine
from typing import Any, Optional, Set
from urllib.parse import urlsplit

import aiohttp

from .errors import SessionClosedError, TransportError
from .transport import ClientReceiver, ClientTransport

SESSION_ID_HEADER = "Mcp-Session-Id"
EVENT_STREAM = "text/event-stream"


class StreamableHTTPClientTransport(ClientTransport):
    """Posts messages to a single MCP endpoint and listens for server pushes.

    Replies arrive either as a JSON body or as an event stream on the POST
    response. Once the server has assigned a session id, a GET event stream
    is kept open for messages the server sends on its own.
    """

    def __init__(
        self,
        server_url: str,
        *,
        receive_timeout: float = 30.0,
        retry_interval: float = 1.0,
        session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        try:
            urlsplit(server_url)
        except ValueError as exc:
            raise TransportError(f"failed to parse server URL: {exc}") from exc
        self.server_url = server_url
        self.receive_timeout = receive_timeout
        self.retry_interval = retry_interval
        self.logger = logger or logging.getLogger(__name__)
        self.session_id = ""
        self._session = session
        self._owns_session = False
        self._receiver: Optional[ClientReceiver] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False
        self._closed = asyncio.Event()

    async def start(self) -> None:
        """Begin polling for the server's GET event stream."""
        self._http()
        self._spawn(self._stream_loop())

    async def send(self, message: bytes) -> None:
        http = self._http()
        headers = {
            "Content-Type": "application/json",
            "Accept": f"application/json, {EVENT_STREAM}",
        }
        sent_session_id = self.session_id
        if sent_session_id:
            headers[SESSION_ID_HEADER] = sent_session_id
        try:
            resp = await http.post(self.server_url, data=bytes(message), headers=headers)
        except aiohttp.ClientError as exc:
            raise TransportError(f"failed to send message: {exc}") from exc

        streaming = False
        try:
            if not 200 <= resp.status < 300:
                if sent_session_id and resp.status == 404:
                    raise SessionClosedError()
                body = await self._read_body(resp)
                raise TransportError(
                    f"unexpected status code: {resp.status}, status: {resp.reason}, "
                    f"body={body.decode('utf-8', errors='replace')}"
                )
            if resp.status == 202:
                return

            new_session_id = resp.headers.get(SESSION_ID_HEADER, "")
            if new_session_id:
                self.session_id = new_session_id

            content_type = resp.headers.get("Content-Type", "")
            if content_type == EVENT_STREAM:
                streaming = True
                self._spawn(self._consume(resp))
                return
            if content_type.startswith("application/json"):
                body = await self._read_body(resp)
                if self._receiver is None:
                    raise TransportError("failed to process response: no receiver set")
                try:
                    await self._receiver(body)
                except Exception as exc:
                    raise TransportError(f"failed to process response: {exc}") from exc
                return
            raise TransportError(f"unexpected content type: {content_type}")
        finally:
            if not streaming:
                resp.release()

    def set_receiver(self, receiver: ClientReceiver) -> None:
        self._receiver = receiver

    async def close(self) -> None:
        """Stop all streams and end the server-side session if there is one."""
        self._closing = True
        self._closed.set()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        try:
            if self.session_id and self._session is not None:
                try:
                    async with self._session.delete(
                        self.server_url, headers={SESSION_ID_HEADER: self.session_id}
                    ):
                        pass
                except aiohttp.ClientError as exc:
                    raise TransportError(f"failed to send message: {exc}") from exc
        finally:
            if self._owns_session and self._session is not None:
                await self._session.close()
                self._session = None
                self._owns_session = False

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
            self._owns_session = True
        return self._session

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _read_body(resp: aiohttp.ClientResponse) -> bytes:
        try:
            return await resp.read()
        except aiohttp.ClientError as exc:
            raise TransportError(f"failed to read response body: {exc}") from exc

    async def _stream_loop(self) -> None:
        http = self._http()
        while not self._closing:
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self.retry_interval)
                return
            except asyncio.TimeoutError:
                pass
            session_id = self.session_id
            if not session_id:
                # Wait for a POST to establish the session first.
                continue
            headers = {"Accept": EVENT_STREAM, SESSION_ID_HEADER: session_id}
            try:
                resp = await http.get(self.server_url, headers=headers)
            except aiohttp.ClientError as exc:
                self.logger.error("failed to connect to SSE stream: %s", exc)
                continue
            if not 200 <= resp.status < 300:
                resp.release()
                if resp.status == 405:
                    self.logger.info("server does not support SSE streaming")
                    return
                if resp.status == 404:
                    self.logger.info("%s", SessionClosedError())
                    continue
                self.logger.info(
                    "unexpected status code: %d, status: %s", resp.status, resp.reason
                )
                return
            await self._consume(resp)

    async def _consume(self, resp: aiohttp.ClientResponse) -> None:
        try:
            await self._read_stream(resp.content)
        finally:
            resp.release()

    async def _read_stream(self, lines: AsyncIterable[bytes]) -> None:
        data = ""
        try:
            async for raw in lines:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    if data:
                        await self._process_event(data)
                        data = ""
                    continue
                if line.startswith("data:"):
                    data = line[len("data:"):].strip()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            if not self._closing:
                self.logger.error("SSE stream error: %s", exc)
            return
        if data:
            await self._process_event(data)

    async def _process_event(self, data: str) -> None:
        if self._receiver is None:
            self.logger.error("error processing SSE event: no receiver set")
            return
        try:
            await asyncio.wait_for(
                self._receiver(data.encode("utf-8")), timeout=self.receive_timeout
            )
        except Exception as exc:
            self.logger.error("error processing SSE event: %r", exc)