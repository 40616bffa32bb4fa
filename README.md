# mcpwire

Asyncio transports and session bookkeeping for Model Context Protocol
(MCP) servers and clients. Messages are raw JSON-RPC payloads as `bytes`.
mcpwire moves them between peers and keeps track of server-side sessions.
It does not interpret them.

## Installation

```
pip install mcpwire
```

## Transports

| Module                            | Class(es)                                   | Wire |
|-----------------------------------|---------------------------------------------|------|
| `mcpwire.stdio_server`            | `StdioServerTransport`                      | newline-delimited messages on stdin/stdout |
| `mcpwire.stdio_client`            | `StdioClientTransport`                      | starts a server command and talks to its stdin/stdout |
| `mcpwire.sse_server`              | `SSEServerTransport`, `SSEHandler`          | a server-sent events stream plus POSTs to a message endpoint |
| `mcpwire.sse_client`              | `SSEClientTransport`                        | connects to such a stream and posts to the announced endpoint |
| `mcpwire.streamable_http_client`  | `StreamableHTTPClientTransport`             | one HTTP endpoint: POST for messages, GET for a server stream, DELETE to end the session |

Every client transport has the same methods: `start()`, `send(message)`,
`set_receiver(receiver)` and `close()`, and can be used as an async context
manager (`start()` on entry, `close()` on exit). Every server transport has
`run()`, `send(session_id, message)`, `set_receiver(receiver)`,
`set_session_manager(manager)` and `shutdown(server_done)`. The abstract
bases are `ClientTransport`, `ServerTransport` and `ServerSessionManager`
in `mcpwire.transport`.

`shutdown(server_done)` takes an `asyncio.Event`: the transport stops
receiving, waits for the event, then closes all sessions. Bound the total
time with `asyncio.wait_for`.

### Receivers

A client receiver is an async callable that takes the incoming message.
A server receiver is an async callable that takes the session id and the
message. It returns either `None`, for notifications and responses, or an
awaitable that resolves to the reply bytes. An empty reply is logged as a
failure and not sent.

## Sessions

`mcpwire.session.SessionManager` implements `ServerSessionManager`. It
creates sessions (`SessionState` objects, keyed by a UUID), keeps a bounded
send queue of 64 messages for each one, remembers closed sessions, and can
run a heartbeat (`run_heartbeat(interval)`, stopped by `stop_heartbeat()`)
that closes sessions that have been idle longer than `max_idle_time` or
that fail a liveness probe three times in a row:

```python
import asyncio
from mcpwire.session import SessionManager

async def probe(session_id: str) -> None:
    ...  # ping the client; raise on failure

async def main() -> None:
    manager = SessionManager(probe, max_idle_time=300.0)
    session_id = manager.create_session()
    manager.open_message_queue_for_send(session_id)
    await manager.enqueue_message_for_send(session_id, b'{"jsonrpc":"2.0"}')
    print(await manager.dequeue_message_for_send(session_id))

asyncio.run(main())
```

Once a session is closed, queued messages are still delivered, after which
`dequeue_message_for_send` raises `SendEOFError`.

## A stdio server

```python
import asyncio
from mcpwire.session import SessionManager
from mcpwire.stdio_server import StdioServerTransport

async def receive(session_id: str, message: bytes):
    async def reply() -> bytes:
        return message  # echo
    return reply()

async def main() -> None:
    transport = StdioServerTransport()
    transport.set_receiver(receive)
    transport.set_session_manager(SessionManager())
    await transport.run()

asyncio.run(main())
```

## An SSE server

`SSEServerTransport("127.0.0.1:8080")` runs its own aiohttp server with an
event stream at `/sse` and a message endpoint at `/message` (change them
with `sse_path`, `message_path` and `url_prefix`). Each stream opens a new
session and first sends an `endpoint` event naming
`<message endpoint>?sessionID=<id>`; clients POST their messages there.

To mount the handlers in an aiohttp application of your own, use
`create_sse_transport_and_handler(message_endpoint_url)`. It returns a
transport without its own server and an `SSEHandler`, whose
`handle_sse` and `handle_message` methods are aiohttp request handlers.
`join_path` and `complete_message_path` are the helpers used to build the
message endpoint URL.

## What this package does not include

There is no server side for the streamable HTTP protocol:
`StreamableHTTPClientTransport` talks to such a server, but mcpwire cannot
act as one. There is also no command-line program; everything is used as a
library.

## Errors

Failures are raised as subclasses of `mcpwire.errors.TransportError`:
`LackSessionError`, `SessionClosedError`, `SendEOFError` and
`QueueNotOpenedError`.

## Running the tests

```
pip install -e ".[test]"
pytest
```