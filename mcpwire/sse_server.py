"""Server transport for the HTTP + server-sent events protocol."""

from __future__ import annotations

import asyncio
import logging
import posixpath
from typing import List, Optional, Set, Tuple
from urllib.parse import urlsplit, urlunsplit

from aiohttp import web

from .errors import SendEOFError, TransportError
from .transport import ServerReceiver, ServerSessionManager, ServerTransport


def _clean(path: str) -> str:
    if not path:
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _join(elements: List[str]) -> str:
    parts = [element for element in elements if element]
    if not parts:
        return ""
    return _clean("/".join(parts))


def join_path(url: str, *args: str) -> str:
    """Append path elements to the path of ``url`` and clean the result.

    ``./`` and ``../`` elements are resolved, repeated slashes are reduced to
    one, and a trailing slash on the last element is kept.
    """
    parts = urlsplit(url)
    elements = [parts.path, *args]
    if not elements[0].startswith("/"):
        # A relative URL stays relative but never gains ../ elements.
        elements[0] = "/" + elements[0]
        joined = _join(elements)[1:]
    else:
        joined = _join(elements)
    if elements[-1].endswith("/") and not joined.endswith("/"):
        joined += "/"
    return urlunsplit(parts._replace(path=joined))


def complete_message_path(url_prefix: str, message_path: str) -> str:
    """Return the full message endpoint URL under ``url_prefix``."""
    try:
        urlsplit(url_prefix)
    except ValueError as exc:
        raise TransportError(f"failed to parse URL prefix: {exc}") from exc
    return join_path(url_prefix, message_path)


def _split_addr(addr: str) -> Tuple[Optional[str], int]:
    host, _, port = addr.rpartition(":")
    try:
        return (host or None), int(port)
    except ValueError as exc:
        raise TransportError(f"invalid listen address: {addr!r}") from exc


class SSEServerTransport(ServerTransport):
    """Delivers messages to clients over SSE streams and takes requests by POST.

    With ``addr`` the transport runs its own HTTP server; without it, requests
    are served through an :class:`SSEHandler` mounted in another application.
    """

    def __init__(
        self,
        addr: Optional[str] = None,
        *,
        sse_path: str = "/sse",
        message_path: str = "/message",
        url_prefix: str = "",
        message_endpoint_url: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.addr = addr
        self.sse_path = sse_path
        self.message_path = message_path
        self.url_prefix = url_prefix
        self.logger = logger or logging.getLogger(__name__)
        if message_endpoint_url is not None:
            self.message_endpoint_url = message_endpoint_url
        elif url_prefix:
            self.message_endpoint_url = complete_message_path(url_prefix, message_path)
        else:
            self.message_endpoint_url = message_path
        self.listening = asyncio.Event()
        self._receiver: Optional[ServerReceiver] = None
        self._session_manager: Optional[ServerSessionManager] = None
        self._closing = False
        self._in_flight = 0
        self._no_sends = asyncio.Event()
        self._no_sends.set()
        self._stopped = asyncio.Event()
        self._reply_tasks: Set[asyncio.Task] = set()
        self._runner: Optional[web.AppRunner] = None
        self._app: Optional[web.Application] = None
        if addr is not None:
            handler = SSEHandler(self)
            app = web.Application()
            app.router.add_route("*", sse_path, handler.handle_sse)
            app.router.add_route("*", message_path, handler.handle_message)
            self._app = app

    async def run(self) -> None:
        if self._app is None or self.addr is None:
            self.listening.set()
            await self._stopped.wait()
            return
        host, port = _split_addr(self.addr)
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        try:
            await site.start()
        except OSError as exc:
            await runner.cleanup()
            raise TransportError(f"failed to start HTTP server: {exc}") from exc
        self._runner = runner
        print(f"starting mcp server at http://{self.addr}{self.sse_path}")
        self.listening.set()
        await self._stopped.wait()

    async def send(self, session_id: str, message: bytes) -> None:
        self._in_flight += 1
        self._no_sends.clear()
        try:
            if self._closing:
                raise TransportError("transport is shut down")
            if self._session_manager is None:
                raise TransportError("session manager has not been set")
            await self._session_manager.enqueue_message_for_send(session_id, message)
        finally:
            self._in_flight -= 1
            if not self._in_flight:
                self._no_sends.set()

    def set_receiver(self, receiver: ServerReceiver) -> None:
        self._receiver = receiver

    def set_session_manager(self, manager: ServerSessionManager) -> None:
        self._session_manager = manager

    async def shutdown(self, server_done: asyncio.Event) -> None:
        await server_done.wait()
        self._closing = True
        await self._no_sends.wait()
        if self._session_manager is not None:
            self._session_manager.close_all_sessions()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._stopped.set()

    def _write_error(self, code: int, message: str) -> web.Response:
        self.logger.error("sseServerTransport Error: code: %d, message: %s", code, message)
        return web.Response(status=code, text=message, content_type="text/plain")

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        manager = self._session_manager
        if manager is None:
            return self._write_error(500, "Internal server error")
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)
        session_id = manager.create_session()
        try:
            uri = f"{self.message_endpoint_url}?sessionID={session_id}"
            try:
                await response.write(f"event: endpoint\ndata: {uri}\n\n".encode("utf-8"))
            except (ConnectionError, RuntimeError):
                self.logger.error("send endpoint message fail")
                return response
            try:
                manager.open_message_queue_for_send(session_id)
            except TransportError as exc:
                self.logger.error(
                    "handleSSE sessionID=%s OpenMessageQueueForSend fail: %s", session_id, exc
                )
                return response
            while True:
                try:
                    message = await manager.dequeue_message_for_send(session_id)
                except SendEOFError:
                    return response
                except TransportError as exc:
                    self.logger.debug(
                        "sse connect dequeueMessage err: %s, sessionID=%s", exc, session_id
                    )
                    return response
                self.logger.debug("sending message: %r", message)
                try:
                    await response.write(b"event: message\ndata: " + bytes(message) + b"\n\n")
                except (ConnectionError, RuntimeError) as exc:
                    self.logger.error("failed to write message: %s", exc)
                    return response
        finally:
            manager.close_session(session_id)

    async def _handle_message(self, request: web.Request) -> web.Response:
        if request.method != "POST":
            return self._write_error(405, "Method not allowed")
        session_id = request.query.get("sessionID", "")
        if not session_id:
            return self._write_error(400, "Missing session ID")
        try:
            body = await request.read()
        except (ConnectionError, ValueError) as exc:
            return self._write_error(400, f"Invalid request: {exc}")
        if self._receiver is None:
            return self._write_error(500, "Internal server error")
        try:
            reply = await self._receiver(session_id, body)
        except Exception as exc:
            return self._write_error(400, f"Failed to receive: {exc}")
        self.logger.debug("received message: %r", body)
        if reply is not None:
            task = asyncio.create_task(self._forward_reply(session_id, reply, self.logger))
            self._reply_tasks.add(task)
            task.add_done_callback(self._reply_tasks.discard)
        return web.Response(status=202)


class SSEHandler:
    """aiohttp request handlers for mounting an SSE transport in another app."""

    def __init__(self, transport: SSEServerTransport) -> None:
        self.transport = transport

    async def handle_sse(self, request: web.Request) -> web.StreamResponse:
        """Open an event stream for a new session and forward its messages."""
        return await self.transport._handle_sse(request)

    async def handle_message(self, request: web.Request) -> web.Response:
        """Accept a JSON-RPC message posted by a client."""
        return await self.transport._handle_message(request)


def create_sse_transport_and_handler(
    message_endpoint_url: str, logger: Optional[logging.Logger] = None
) -> Tuple[SSEServerTransport, SSEHandler]:
    """Return a transport without its own HTTP server, and its handler.

    ``message_endpoint_url`` is announced to clients as is and may be a path
    or a full URL.
    """
    transport = SSEServerTransport(message_endpoint_url=message_endpoint_url, logger=logger)
    return transport, SSEHandler(transport)