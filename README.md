# ttrpc

A small RPC library in the style of gRPC, built for low-memory environments.
Requests and responses are protobuf-encoded and carried in length-prefixed
frames over Unix domain sockets (including abstract sockets on Linux) or vsock
(Linux only). It has no dependencies beyond the standard library and needs a
POSIX system (it waits on sockets with `select.poll`).

## Socket addresses

- `unix:///run/some.sock` – a regular Unix domain socket
- `unix://@/run/some.sock` – an abstract Unix domain socket (Linux only)
- `vsock://8:1024` – a vsock address as `cid:port` (Linux only); a cid of `-1`
  means any cid

`ttrpc.common.parse_sockaddr` and `ttrpc.common.parse_vsock` parse these;
other schemes raise `OthersError`.

## Serving

A method is served by a subclass of `ttrpc.utils.MethodHandler`. Its
`handler(ctx, req)` receives a `TtrpcContext` (the call's header, metadata,
timeout, a cancel event that is set when the connection goes away, and the
response queue) and the decoded `Request`, and answers with
`response_to_channel`.

```python
from ttrpc.errors import get_status
from ttrpc.messages import Code, Response
from ttrpc.server import Server
from ttrpc.utils import MethodHandler, response_to_channel


class Echo(MethodHandler):
    def handler(self, ctx, req):
        res = Response(status=get_status(Code.OK, ""), payload=req.payload)
        response_to_channel(ctx.mh.stream_id, res, ctx.res_tx)


server = Server()
server.bind("unix:///tmp/echo.sock")
server.register_service({"/demo.Echo/Say": Echo()})
server.start()
# ...
server.shutdown()
```

Handlers are keyed by `/service/method`. A call to an unknown path is answered
with an `INVALID_ARGUMENT` status; an exception raised by a handler closes its
connection. Only one address can be bound per server; `add_listener(fd)`
serves on an already listening socket instead.

Each connection is served by a pool of worker threads whose size is set by the
keyword arguments `thread_count_default` (3), `thread_count_min` (1) and
`thread_count_max` (5). `start()` refuses settings where the default is not
strictly between the minimum and the maximum. `accept_retry_interval` (10
seconds) is how long the listener backs off when accepting fails because
descriptors or memory ran out. `stop_listen()` stops accepting,
`disconnect()` shuts the open connections down, and `shutdown()` does both.

## Calling

```python
from ttrpc.client import Client
from ttrpc.messages import Request

with Client.connect("unix:///tmp/echo.sock") as client:
    res = client.request(Request(service="demo.Echo", method="Say", payload=b"hi"))
    print(res.payload)
```

`Client.from_fd(fd)` wraps an already connected socket. A request whose
`timeout_nano` is positive waits at most that long for its response and then
raises `OthersError`. A non-OK status from the server is raised as
`RpcStatusError`, which carries the `Status`. The errors defined in
`ttrpc.errors` all derive from `TtrpcError`.

Request metadata can be built with `ttrpc.context`: `Context` (with `add` and
`set`), `with_timeout`, `with_duration` (a `timedelta` or seconds),
`with_metadata`, and `to_pb` / `from_pb` to convert between a metadata mapping
and a list of `KeyValue` entries.

## Wire format

Each frame starts with a 10-byte header: a big-endian 32-bit payload length,
a big-endian 32-bit stream id, a one-byte message type (request, response or
data) and a one-byte flags field. Payloads longer than 4 MiB are refused; an
oversized incoming request is skipped and answered with `INVALID_ARGUMENT`.
`ttrpc.proto` has `MessageHeader`, `GenMessage` and `Message` for reading and
writing frames on file-like objects, and `ttrpc.messages` encodes and decodes
`Request`, `Response`, `Status` and `KeyValue`.

## What it does not do

- Calls are unary only: there is no streaming API, and no asyncio client or
  server.
- There is no generation of service stubs from `.proto` files. Handlers and
  callers encode and decode their own payload bytes.

## Tests

The tests use pytest, which the `test` extra installs.