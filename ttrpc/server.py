"""Blocking ttrpc server: accepts connections and dispatches requests to method handlers."""

from __future__ import annotations

import errno
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Mapping

from . import context
from .channel import read_message, write_message
from .errors import OthersError, SocketError, TtrpcError, get_status
from .messages import Code, Request, Response
from .net import PipeConnection, PipeListener
from .proto import MESSAGE_TYPE_REQUEST, MessageHeader, MessageReturnError
from .utils import MethodHandler, TtrpcContext, response_error_to_channel, response_to_channel

logger = logging.getLogger(__name__)

DEFAULT_WAIT_THREAD_COUNT_DEFAULT = 3
DEFAULT_WAIT_THREAD_COUNT_MIN = 1
DEFAULT_WAIT_THREAD_COUNT_MAX = 5
DEFAULT_ACCEPT_RETRY_INTERVAL = 10.0

_RESOURCE_LIMIT_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM})

_STOP = object()
_CLOSED = object()


def is_resource_limit_error(err: BaseException) -> bool:
    """True when ``err`` reports that a process or system resource ran out."""
    return getattr(err, "errno", None) in _RESOURCE_LIMIT_ERRNOS


class _Reaper:
    """Closes connections once their handler threads have finished.

    It stops when every holder of a handle (the server, the listener loop
    and each connection) has released it.
    """

    def __init__(self, connections: dict[int, _Connection], lock: threading.Lock) -> None:
        self._connections = connections
        self._connections_lock = lock
        self._queue: queue.Queue = queue.Queue()
        self._holders = 1
        self._holders_lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name="reaper", daemon=True)
        self._thread.start()

    def acquire(self) -> None:
        with self._holders_lock:
            self._holders += 1

    def release(self) -> None:
        with self._holders_lock:
            self._holders -= 1
            last = self._holders == 0
        if last:
            self._queue.put(_STOP)

    def reap(self, conn_id: int) -> None:
        self._queue.put(conn_id)

    def join(self) -> None:
        self._thread.join()

    def _run(self) -> None:
        for conn_id in iter(self._queue.get, _STOP):
            with self._connections_lock:
                conn = self._connections.pop(conn_id, None)
            if conn is not None:
                conn.thread.join()
                conn.close()
        logger.info("reaper thread exited")


@dataclass
class _Connection:
    pipe: PipeConnection
    quit: threading.Event
    thread: threading.Thread

    def close(self) -> None:
        try:
            self.pipe.close()
        except TtrpcError as exc:
            logger.debug("closing connection failed: %s", exc)

    def shutdown(self) -> None:
        self.quit.set()
        try:
            self.pipe.shutdown()
        except TtrpcError as exc:
            logger.debug("connection may already be closed: %s", exc)


class _ConnectionHandler:
    """Serves one accepted connection with a reader, a writer and a pool of workers."""

    def __init__(
        self,
        pipe: PipeConnection,
        methods: Mapping[str, MethodHandler],
        default: int,
        minimum: int,
        maximum: int,
    ) -> None:
        self.pipe = pipe
        self.quit = threading.Event()
        self._methods = methods
        self._default = default
        self._min = minimum
        self._max = maximum
        self._responses: queue.Queue = queue.Queue()
        self._workload: queue.Queue = queue.Queue()
        self._control: queue.Queue = queue.Queue()
        self._cancel = threading.Event()
        self._waiting = 0
        self._waiting_lock = threading.Lock()
        self._workers: list[threading.Thread] = []

    def run(self, reaper: _Reaper) -> None:
        logger.debug("Got new client")
        try:
            self._serve()
        finally:
            reaper.reap(self.pipe.id)
            reaper.release()
            logger.debug("client thread quit")

    def _serve(self) -> None:
        responder = threading.Thread(target=self._respond, name="ttrpc-response", daemon=True)
        responder.start()
        reader = threading.Thread(target=self._read, name="ttrpc-reader", daemon=True)
        reader.start()

        self._start_workers(self._default)
        while not self.quit.is_set():
            self._check_workers()
            self._control.get()

        reader.join()
        for worker in list(self._workers):
            worker.join()
        self._responses.put(_STOP)
        responder.join()

    def _respond(self) -> None:
        for header, buf in iter(self._responses.get, _STOP):
            try:
                write_message(self.pipe, header, buf)
            except TtrpcError as exc:
                logger.error("write_message got %r", exc)
                self.quit.set()
                break
        logger.debug("response thread quit")

    def _read(self) -> None:
        try:
            while not self.quit.is_set():
                try:
                    header, buf = read_message(self.pipe)
                    item = (header, buf)
                except MessageReturnError as exc:
                    item = (exc.header, exc.error)
                except SocketError as exc:
                    logger.debug("Socket error %s", exc.message)
                    self._cancel.set()
                    self.quit.set()
                    self._control.put(None)
                    break
                except TtrpcError as exc:
                    logger.debug("Other error %r", exc)
                    continue
                self._workload.put(item)
        finally:
            self._cancel.set()
            self._workload.put(_CLOSED)
            logger.debug("read message thread quit")

    def _start_workers(self, count: int) -> None:
        for _ in range(count):
            if self.quit.is_set():
                break
            worker = threading.Thread(target=self._work, name="ttrpc-worker", daemon=True)
            self._workers.append(worker)
            worker.start()

    def _check_workers(self) -> None:
        with self._waiting_lock:
            waiting = self._waiting
        if waiting < self._min:
            self._start_workers(self._default - waiting)

    def _quit_connection(self) -> None:
        self.quit.set()
        self._control.put(None)

    def _work(self) -> None:
        while not self.quit.is_set():
            with self._waiting_lock:
                self._waiting += 1
                if self._waiting > self._max:
                    self._waiting -= 1
                    break

            item = self._workload.get()
            if item is _CLOSED:
                # Let the other workers see the end of the workload too.
                self._workload.put(_CLOSED)

            if self.quit.is_set():
                self._control.put(None)
                break

            with self._waiting_lock:
                self._waiting -= 1
                waiting = self._waiting
            if waiting < self._min:
                logger.debug("notify client handler to create much more worker threads!")
                self._control.put(None)

            if item is _CLOSED:
                logger.debug("workload closed")
                self._quit_connection()
                break

            try:
                self._dispatch(*item)
            except Exception as exc:
                logger.debug("handling request failed: %r", exc)
                self._quit_connection()
                break

    def _dispatch(self, header: MessageHeader, result: bytes | BaseException) -> None:
        stream_id = header.stream_id
        if isinstance(result, BaseException):
            response_error_to_channel(stream_id, result, self._responses)
            return

        if header.message_type != MESSAGE_TYPE_REQUEST:
            return

        try:
            req = Request.decode(result)
        except ValueError as exc:
            status = get_status(Code.INVALID_ARGUMENT, exc)
            response_to_channel(stream_id, Response(status=status), self._responses)
            return
        logger.debug("Got Message request %r", req)

        path = f"/{req.service}/{req.method}"
        method = self._methods.get(path)
        if method is None:
            status = get_status(Code.INVALID_ARGUMENT, f"{path} does not exist")
            response_to_channel(stream_id, Response(status=status), self._responses)
            return

        ctx = TtrpcContext(
            fd=self.pipe.id,
            cancel=self._cancel,
            mh=header,
            res_tx=self._responses,
            metadata=context.from_pb(req.metadata),
            timeout_nano=req.timeout_nano,
        )
        method.handler(ctx, req)


class Server:
    """Serves registered methods on one listening socket."""

    def __init__(
        self,
        *,
        thread_count_default: int = DEFAULT_WAIT_THREAD_COUNT_DEFAULT,
        thread_count_min: int = DEFAULT_WAIT_THREAD_COUNT_MIN,
        thread_count_max: int = DEFAULT_WAIT_THREAD_COUNT_MAX,
        accept_retry_interval: float = DEFAULT_ACCEPT_RETRY_INTERVAL,
    ) -> None:
        self.thread_count_default = thread_count_default
        self.thread_count_min = thread_count_min
        self.thread_count_max = thread_count_max
        self.accept_retry_interval = accept_retry_interval
        self._listeners: list[PipeListener] = []
        self._listener_quit = threading.Event()
        self._connections: dict[int, _Connection] = {}
        self._connections_lock = threading.Lock()
        self._methods: dict[str, MethodHandler] = {}
        self._listener_thread: threading.Thread | None = None
        self._reaper: _Reaper | None = None

    def _check_single_listener(self) -> None:
        if self._listeners:
            raise OthersError("ttrpc just support 1 sockaddr now")

    def bind(self, sockaddr: str) -> Server:
        """Listen on ``sockaddr``; only one address is supported."""
        self._check_single_listener()
        self._listeners.append(PipeListener.bind(sockaddr))
        return self

    def add_listener(self, fd: int) -> Server:
        """Serve on an already listening socket descriptor."""
        self._check_single_listener()
        self._listeners.append(PipeListener.from_fd(fd))
        return self

    def register_service(self, methods: Mapping[str, MethodHandler]) -> Server:
        """Add handlers keyed by ``/service/method``."""
        self._methods.update(methods)
        return self

    def fileno(self) -> int:
        if not self._listeners:
            raise OthersError("ttrpc not bind")
        return self._listeners[0].fileno()

    def start_listen(self) -> None:
        """Start accepting connections in a background thread."""
        if not self._listeners:
            raise OthersError("ttrpc not bind")

        self._listener_quit.clear()
        if self._reaper is None:
            self._reaper = _Reaper(self._connections, self._connections_lock)
        reaper = self._reaper
        reaper.acquire()

        self._listener_thread = threading.Thread(
            target=self._listen_loop,
            args=(self._listeners[0], reaper),
            name="listener_loop",
            daemon=True,
        )
        self._listener_thread.start()
        logger.info("server listen started")

    def start(self) -> None:
        """Check the thread counts and start listening."""
        if self.thread_count_default >= self.thread_count_max:
            raise OthersError("thread_count_default should smaller than thread_count_max")
        if self.thread_count_default <= self.thread_count_min:
            raise OthersError("thread_count_default should bigger than thread_count_min")
        self.start_listen()
        logger.info("server started")

    def _listen_loop(self, listener: PipeListener, reaper: _Reaper) -> None:
        try:
            while not self._listener_quit.is_set():
                try:
                    pipe = listener.accept()
                except InterruptedError as exc:
                    logger.error("got interruption %r.  Continue...", exc)
                    continue
                except OSError as exc:
                    logger.error("listener accept got %r", exc)
                    # Running out of descriptors does not clear up quickly, and
                    # polling is level-triggered, so back off instead of spinning.
                    if is_resource_limit_error(exc):
                        time.sleep(self.accept_retry_interval)
                    continue
                if pipe is None:
                    continue
                self._serve_connection(pipe, reaper)
            logger.info("listener shutdown for quit flag")
        finally:
            reaper.release()
            logger.info("ttrpc server listener stopped")

    def _serve_connection(self, pipe: PipeConnection, reaper: _Reaper) -> None:
        handler = _ConnectionHandler(
            pipe,
            self._methods,
            self.thread_count_default,
            self.thread_count_min,
            self.thread_count_max,
        )
        reaper.acquire()
        thread = threading.Thread(
            target=handler.run, args=(reaper,), name="client_handler", daemon=True
        )
        with self._connections_lock:
            self._connections[pipe.id] = _Connection(pipe, handler.quit, thread)
        thread.start()

    def stop_listen(self) -> Server:
        """Stop accepting connections; open connections keep being served."""
        if not self._listeners:
            raise OthersError("ttrpc not bind")
        self._listener_quit.set()
        self._listeners[0].close()
        logger.info("close monitor")
        if self._listener_thread is not None:
            self._listener_thread.join()
            self._listener_thread = None
        logger.info("listener thread stopped")
        return self

    def disconnect(self) -> None:
        """Shut every connection down and wait for them to finish."""
        logger.info("begin to shutdown connection")
        with self._connections_lock:
            connections = list(self._connections.values())
        for conn in connections:
            conn.shutdown()
        logger.info("connections closed")

        reaper, self._reaper = self._reaper, None
        if reaper is not None:
            reaper.release()
            reaper.join()
        logger.info("reaper thread stopped")

    def shutdown(self) -> None:
        """Stop listening and close every connection."""
        self.stop_listen().disconnect()