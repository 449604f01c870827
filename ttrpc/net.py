"""Unix socket transport: a listener, connections and the client side of a connection."""

from __future__ import annotations

import logging
import os
import select
import socket

from . import common
from .errors import SystemCallError

logger = logging.getLogger(__name__)

POLL_MAX_TIME = 10
"""Milliseconds a client waits in one readiness check."""

_RETRYABLE = (InterruptedError, BlockingIOError)


def _syscall_error(exc: OSError) -> SystemCallError:
    return SystemCallError(exc.errno or 0, exc.strerror)


class PipeConnection:
    """A connected stream socket used for reading and writing frames."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self.id = sock.fileno()

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes; an empty result means the peer closed."""
        while True:
            try:
                return self._sock.recv(size)
            except _RETRYABLE:
                continue
            except OSError as exc:
                raise _syscall_error(exc) from exc

    def write(self, data: bytes) -> int:
        """Write some of ``data`` and return how many bytes went out."""
        while True:
            try:
                return self._sock.send(data)
            except _RETRYABLE:
                continue
            except OSError as exc:
                raise _syscall_error(exc) from exc

    def close(self) -> None:
        try:
            self._sock.close()
        except OSError as exc:
            raise _syscall_error(exc) from exc

    def shutdown(self) -> None:
        """Shut down the reading side, waking any blocked reader."""
        try:
            self._sock.shutdown(socket.SHUT_RD)
        except OSError as exc:
            raise _syscall_error(exc) from exc


class PipeListener:
    """A listening socket whose accept can be woken up by :meth:`close`."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        try:
            self._monitor_read, self._monitor_write = os.pipe()
        except OSError as exc:
            raise _syscall_error(exc) from exc

    @classmethod
    def bind(cls, sockaddr: str) -> PipeListener:
        """Bind and listen on ``sockaddr``."""
        sock, _ = common.do_bind(sockaddr)
        try:
            common.do_listen(sock)
        except Exception:
            sock.close()
            raise
        return cls(sock)

    @classmethod
    def from_fd(cls, fd: int) -> PipeListener:
        """Take over an already listening socket descriptor."""
        try:
            sock = socket.socket(fileno=fd)
        except OSError as exc:
            raise _syscall_error(exc) from exc
        return cls(sock)

    def fileno(self) -> int:
        return self._sock.fileno()

    def accept(self) -> PipeConnection | None:
        """Wait for a connection.

        Returns None on a spurious wake-up or once the listener is closed;
        raises OSError when accepting fails.
        """
        listener_fd = self._sock.fileno()
        poller = select.poll()
        poller.register(self._monitor_read, select.POLLIN)
        poller.register(listener_fd, select.POLLIN)
        try:
            events = dict(poller.poll())
        except OSError as exc:
            logger.error("fatal error in listener_loop: %r", exc)
            raise

        if events.get(self._monitor_read) or not events.get(listener_fd):
            return None

        try:
            conn, _ = self._sock.accept()
        except OSError as exc:
            logger.error("failed to accept error %r", exc)
            raise
        conn.setblocking(True)
        return PipeConnection(conn)

    def close(self) -> None:
        """Wake up and stop :meth:`accept`."""
        try:
            os.close(self._monitor_write)
        except OSError as exc:
            logger.warning(
                "failed to close notify fd: %d with error: %s", self._monitor_write, exc
            )


class ClientConnection:
    """The client end of a connection, with a private pipe used to stop it."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._fd = sock.fileno()
        try:
            self._receiver, self._closer = socket.socketpair()
        except OSError as exc:
            raise _syscall_error(exc) from exc
        self._receiver_fd = self._receiver.fileno()

    @classmethod
    def connect(cls, sockaddr: str) -> ClientConnection:
        return cls(common.client_connect(sockaddr))

    @classmethod
    def from_fd(cls, fd: int) -> ClientConnection:
        try:
            sock = socket.socket(fileno=fd)
        except OSError as exc:
            raise _syscall_error(exc) from exc
        return cls(sock)

    def ready(self) -> bool:
        """True when data can be read, False after a short wait without any.

        Raises OSError once the connection has been closed.
        """
        poller = select.poll()
        poller.register(self._receiver_fd, select.POLLIN)
        poller.register(self._fd, select.POLLIN)
        try:
            events = dict(poller.poll(POLL_MAX_TIME))
        except InterruptedError:
            return False
        except OSError as exc:
            logger.error("fatal error in process reaper: %s", exc)
            raise

        if events.get(self._receiver_fd):
            raise OSError("pipe closed")
        return bool(events.get(self._fd))

    def get_pipe_connection(self) -> PipeConnection:
        return PipeConnection(self._sock)

    def close_receiver(self) -> None:
        try:
            self._receiver.close()
        except OSError as exc:
            raise _syscall_error(exc) from exc

    def close(self) -> None:
        try:
            self._closer.close()
            self._sock.close()
        except OSError as exc:
            raise _syscall_error(exc) from exc