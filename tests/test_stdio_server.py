import asyncio
import io
import logging

import pytest

from mcpwire.errors import TransportError
from mcpwire.session import SessionManager
from mcpwire.stdio_server import StdioServerTransport


async def _wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _receiver(seen, reply=lambda message: message):
    """Record each message; answer with reply(message), or nothing if reply is None."""

    async def receiver(session_id, message):
        seen.append((session_id, message))
        if reply is None:
            return None

        async def respond():
            return reply(message)

        return respond()

    return receiver


def _make_transport(receiver=None, writer=None, with_manager=True):
    reader = asyncio.StreamReader()
    writer = io.BytesIO() if writer is None else writer
    transport = StdioServerTransport(reader=reader, writer=writer)
    manager = SessionManager() if with_manager else None
    if manager is not None:
        transport.set_session_manager(manager)
    if receiver is not None:
        transport.set_receiver(receiver)
    return transport, reader, writer, manager


def _set_event():
    event = asyncio.Event()
    event.set()
    return event


@pytest.mark.asyncio
async def test_request_is_echoed_to_writer():
    seen = []
    transport, reader, writer, manager = _make_transport(_receiver(seen))
    run_task = asyncio.create_task(transport.run())
    reader.feed_data(b"hello server\n")
    await _wait_until(lambda: writer.getvalue() == b"hello server\n")
    assert seen == [(transport.session_id, b"hello server")]
    assert manager.is_active_session(transport.session_id)

    await asyncio.wait_for(transport.shutdown(_set_event()), 2)
    assert await asyncio.wait_for(run_task, 2) is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "lines, expected_seen",
    [
        (b"", []),
        (
            b'{"method":"notifications/initialized"}\n',
            [b'{"method":"notifications/initialized"}'],
        ),
    ],
    ids=["end-of-input", "notification"],
)
async def test_run_to_end_of_input_writes_nothing(lines, expected_seen):
    seen = []
    transport, reader, writer, _ = _make_transport(_receiver(seen, reply=None))
    if lines:
        reader.feed_data(lines)
    reader.feed_eof()
    assert await asyncio.wait_for(transport.run(), 2) is None
    assert [message for _, message in seen] == expected_seen
    assert writer.getvalue() == b""


@pytest.mark.asyncio
async def test_empty_reply_is_logged(caplog):
    caplog.set_level(logging.ERROR, logger="mcpwire.stdio_server")
    transport, reader, writer, _ = _make_transport(_receiver([], reply=lambda _m: b""))
    run_task = asyncio.create_task(transport.run())
    reader.feed_data(b"request\n")
    await _wait_until(lambda: "handle request fail" in caplog.text)
    assert writer.getvalue() == b""
    reader.feed_eof()
    await asyncio.wait_for(run_task, 2)


@pytest.mark.asyncio
async def test_send_appends_delimiter():
    transport, _, writer, _ = _make_transport(with_manager=False)
    for message in (b'{"id":1}', b'{"id":2}'):
        await transport.send("any", message)
    assert writer.getvalue() == b'{"id":1}\n{"id":2}\n'


@pytest.mark.asyncio
async def test_send_failure_raises_transport_error():
    class _Broken:
        def write(self, data):
            raise OSError("pipe closed")

    transport, _, _, _ = _make_transport(writer=_Broken(), with_manager=False)
    with pytest.raises(TransportError, match="failed to write"):
        await transport.send("any", b"x")


@pytest.mark.asyncio
async def test_run_without_session_manager_fails():
    transport, _, _, _ = _make_transport(with_manager=False)
    with pytest.raises(TransportError):
        await transport.run()


@pytest.mark.asyncio
async def test_shutdown_returns_when_server_done_is_set():
    seen = []
    transport, _, _, _ = _make_transport(_receiver(seen))
    run_task = asyncio.create_task(transport.run())
    await asyncio.sleep(0.05)
    shutdown_task = asyncio.create_task(transport.shutdown(asyncio.Event()))
    await asyncio.wait_for(run_task, 2)
    await asyncio.wait_for(shutdown_task, 2)
    assert run_task.done() and run_task.exception() is None
    assert seen == []