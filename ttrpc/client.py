"""Blocking ttrpc client."""

from __future__ import annotations

import logging
import queue
import threading
import weakref
from typing import Union

from .channel import read_message, write_message
from .errors import (
    OthersError,
    RpcStatusError,
    SocketError,
    TtrpcError,
)
from .messages import Code, DecodeError, Request, Response
from .net import ClientConnection, PipeConnection
from .proto import MESSAGE_TYPE_RESPONSE, MessageHeader, MessageReturnError, check_oversize

logger = logging.getLogger(__name__)

_STOP = object()
_U32_MASK = 0xFFFFFFFF

_Reply = Union[bytes, BaseException]
_Waiters = dict


def _fail_all(waiters: _Waiters, lock: threading.Lock, error: TtrpcError) -> None:
    with lock:
        for reply in waiters.values():
            reply.put(error)
        waiters.clear()


def _trans_resp(
    waiters: _Waiters, lock: threading.Lock, header: MessageHeader, result: _Reply
) -> None:
    with lock:
        reply = waiters.get(header.stream_id)
        if reply is None:
            logger.debug("Recver got unknown packet %r %r", header, result)
            return
        if header.message_type != MESSAGE_TYPE_RESPONSE:
            reply.put(OthersError(f"Recver got malformed packet {header!r} {result!r}"))
            return
        reply.put(result)
        del waiters[header.stream_id]


def _sender_loop(
    requests: queue.Queue, pipe: PipeConnection, waiters: _Waiters, lock: threading.Lock
) -> None:
    stream_id = 1
    for buf, reply in iter(requests.get, _STOP):
        current = stream_id
        stream_id = (stream_id + 2) & _U32_MASK
        with lock:
            waiters[current] = reply
        header = MessageHeader.new_request(current, len(buf))
        try:
            write_message(pipe, header, buf)
        except TtrpcError as exc:
            with lock:
                waiters.pop(current, None)
            reply.put(exc)
    logger.debug("Sender quit")


def _receiver_loop(
    connection: ClientConnection,
    pipe: PipeConnection,
    waiters: _Waiters,
    lock: threading.Lock,
) -> None:
    while True:
        try:
            if not connection.ready():
                continue
        except OSError as exc:
            logger.error("pipeConnection ready error %r", exc)
            _fail_all(waiters, lock, SocketError(f"socket error {exc}"))
            break

        try:
            header, buf = read_message(pipe)
        except MessageReturnError as exc:
            _trans_resp(waiters, lock, exc.header, exc.error)
        except SocketError as exc:
            logger.debug("Socket error %s", exc.message)
            _fail_all(waiters, lock, SocketError(f"socket error {exc.message}"))
            break
        except TtrpcError as exc:
            logger.debug("Others error %r", exc)
        else:
            _trans_resp(waiters, lock, header, buf)
    logger.debug("Receiver quit")


def _release(connection: ClientConnection, requests: queue.Queue) -> None:
    requests.put(_STOP)
    try:
        connection.close()
        connection.close_receiver()
    except TtrpcError as exc:
        logger.debug("closing client connection failed: %s", exc)
    logger.debug("Client is dropped")


class Client:
    """Sends requests over one connection and waits for their responses."""

    def __init__(self, connection: ClientConnection) -> None:
        self._requests: queue.Queue = queue.Queue()
        self._closed = threading.Event()
        waiters: _Waiters = {}
        lock = threading.Lock()
        pipe = connection.get_pipe_connection()

        threading.Thread(
            target=_sender_loop,
            args=(self._requests, pipe, waiters, lock),
            name="ttrpc-client-sender",
            daemon=True,
        ).start()
        threading.Thread(
            target=_receiver_loop,
            args=(connection, pipe, waiters, lock),
            name="ttrpc-client-receiver",
            daemon=True,
        ).start()

        self._finalizer = weakref.finalize(self, _release, connection, self._requests)

    @classmethod
    def connect(cls, sockaddr: str) -> Client:
        return cls(ClientConnection.connect(sockaddr))

    @classmethod
    def from_fd(cls, fd: int) -> Client:
        """A client over an already connected socket descriptor."""
        try:
            connection = ClientConnection.from_fd(fd)
        except TtrpcError as exc:
            raise OthersError(f"new ClientConnection{exc}") from exc
        return cls(connection)

    def request(self, req: Request) -> Response:
        """Send ``req`` and return its response; a non-OK status is raised."""
        check_oversize(req.size(), False)
        buf = req.encode()

        if self._closed.is_set():
            raise OthersError("Send packet to sender error sending on a closed channel")
        reply: queue.Queue = queue.Queue()
        self._requests.put((buf, reply))

        if req.timeout_nano <= 0:
            result = reply.get()
        else:
            try:
                result = reply.get(timeout=req.timeout_nano / 1e9)
            except queue.Empty:
                raise OthersError(
                    "Receive packet from Receiver timeout: timed out waiting on channel"
                ) from None

        if isinstance(result, BaseException):
            raise result
        try:
            res = Response.decode(result)
        except DecodeError as exc:
            raise OthersError(f"Unpack response error {exc}") from exc

        status = res.effective_status
        if status.code != Code.OK:
            raise RpcStatusError(status)
        return res

    def close(self) -> None:
        """Close the connection and stop the worker threads."""
        self._closed.set()
        self._finalizer()

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()