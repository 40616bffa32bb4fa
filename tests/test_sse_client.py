import asyncio
import contextlib
import logging
import socket

import pytest
from aiohttp import web

from mcpwire.errors import TransportError
from mcpwire.sse_client import SSEClientTransport

SERVER_URL = "https://api.example.com/mcp"


class _FakeSSEServer:
    def __init__(self, *, send_endpoint=True, sse_status=200, message_status=202):
        self.send_endpoint = send_endpoint
        self.sse_status = sse_status
        self.message_status = message_status
        self.received = []
        self.outgoing: asyncio.Queue = asyncio.Queue()

    async def sse(self, request):
        if self.sse_status != 200:
            return web.Response(status=self.sse_status, text="nope")
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        if self.send_endpoint:
            await resp.write(b"event: endpoint\r\ndata: /message?sessionID=abc\r\n\r\n")
        while True:
            msg = await self.outgoing.get()
            if msg is None:
                break
            await resp.write(b"event: message\ndata: " + msg + b"\n\n")
        return resp

    async def message(self, request):
        body = await request.read()
        self.received.append((request.query.get("sessionID"), body))
        if self.message_status < 300:
            await self.outgoing.put(body)
        return web.Response(status=self.message_status)


@contextlib.asynccontextmanager
async def _serve(fake):
    app = web.Application()
    app.router.add_get("/sse", fake.sse)
    app.router.add_post("/message", fake.message)
    runner = web.AppRunner(app)
    await runner.setup()
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    port = sock.getsockname()[1]
    site = web.SockSite(runner, sock)
    await site.start()
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        await fake.outgoing.put(None)
        await runner.cleanup()


@contextlib.asynccontextmanager
async def _client_for(fake, receiver=None, **kwargs):
    """Serve ``fake`` and yield an unstarted client for it; the client is closed on exit."""
    async with _serve(fake) as base:
        transport = SSEClientTransport(f"{base}/sse", **kwargs)
        if receiver is not None:
            transport.set_receiver(receiver)
        try:
            yield transport, base
        finally:
            await transport.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data, expected",
    [
        ("/sse/messages", "https://api.example.com/sse/messages"),
        ("https://api.example.org/sse/messages", "https://api.example.org/sse/messages"),
    ],
)
async def test_endpoint_event_resolves_against_server_url(data, expected):
    transport = SSEClientTransport(SERVER_URL)
    await transport.handle_event("endpoint", data)
    assert transport.message_endpoint == expected


@pytest.mark.asyncio
async def test_message_event_is_passed_to_receiver():
    got = []

    async def receiver(message):
        got.append(message)

    transport = SSEClientTransport(SERVER_URL)
    transport.set_receiver(receiver)
    for event, data in (("message", '{"jsonrpc":"2.0","id":1}'), ("other", "ignored")):
        await transport.handle_event(event, data)
    assert got == [b'{"jsonrpc":"2.0","id":1}']
    assert transport.message_endpoint is None


@pytest.mark.asyncio
async def test_slow_receiver_times_out_and_is_logged(caplog):
    caplog.set_level(logging.ERROR, logger="mcpwire.sse_client")

    async def receiver(message):
        await asyncio.sleep(1)

    transport = SSEClientTransport(SERVER_URL, receive_timeout=0.05)
    transport.set_receiver(receiver)
    await transport.handle_event("message", "{}")
    assert "error receive message" in caplog.text


@pytest.mark.asyncio
async def test_send_before_endpoint_fails():
    with pytest.raises(TransportError):
        await SSEClientTransport(SERVER_URL).send(b"{}")


@pytest.mark.asyncio
async def test_round_trip_with_server():
    fake = _FakeSSEServer()
    received: asyncio.Queue = asyncio.Queue()

    async with _client_for(fake, received.put) as (transport, base):
        await transport.start()
        assert transport.message_endpoint == f"{base}/message?sessionID=abc"
        await transport.send(b"hello server")
        got = await asyncio.wait_for(received.get(), 5)
    assert got == b"hello server"
    assert fake.received == [("abc", b"hello server")]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "fake_kwargs, client_kwargs, match",
    [
        ({"sse_status": 500}, {}, "500"),
        ({"send_endpoint": False}, {"endpoint_timeout": 0.3}, "timeout waiting for endpoint"),
    ],
    ids=["bad-status", "no-endpoint"],
)
async def test_start_fails(fake_kwargs, client_kwargs, match):
    async with _client_for(_FakeSSEServer(**fake_kwargs), **client_kwargs) as (transport, _):
        with pytest.raises(TransportError, match=match):
            await transport.start()


@pytest.mark.asyncio
async def test_send_reports_error_status():
    async with _client_for(_FakeSSEServer(message_status=500)) as (transport, _):
        await transport.start()
        with pytest.raises(TransportError, match="unexpected status code: 500"):
            await transport.send(b"{}")