"""Errors raised by ttrpc and helpers that turn them into statuses."""

from __future__ import annotations

import os

from .messages import Code, Response, Status

_SOCK_DISCONNECTED = "socket disconnected"


class TtrpcError(Exception):
    """Base class of every ttrpc error."""


class SocketError(TtrpcError):
    """The connection failed or was closed by the peer."""

    def __init__(self, message: str) -> None:
        super().__init__(f"socket err: {message}")
        self.message = message


class RpcStatusError(TtrpcError):
    """The call finished with a non-OK status."""

    def __init__(self, status: Status) -> None:
        super().__init__(f"rpc status: {status!r}")
        self.status = status


class SystemCallError(TtrpcError):
    """A system call failed with an errno."""

    def __init__(self, errno: int, description: str | None = None) -> None:
        self.errno = errno
        self.description = description if description is not None else os.strerror(errno)
        super().__init__(f"system error: {self.description} (errno {errno})")


class LocalClosedError(TtrpcError):
    """The local end of the stream is closed."""

    def __init__(self) -> None:
        super().__init__("ttrpc err: local stream closed")


class RemoteClosedError(TtrpcError):
    """The remote end of the stream is closed."""

    def __init__(self) -> None:
        super().__init__("ttrpc err: remote stream closed")


class EofError(TtrpcError):
    """End of stream."""

    def __init__(self) -> None:
        super().__init__("eof")


class OthersError(TtrpcError):
    """Any other failure."""

    def __init__(self, message: str) -> None:
        super().__init__(f"ttrpc err: {message}")
        self.message = message


def get_status(code: int, msg: object) -> Status:
    """Build a status from a code and a message."""
    return Status(code=code, message=str(msg))


def get_rpc_status(code: int, msg: object) -> RpcStatusError:
    """Build an error carrying a status built from a code and a message."""
    return RpcStatusError(get_status(code, msg))


def sock_error_msg(size: int, msg: str) -> TtrpcError:
    """Error for a short transfer: a disconnect when nothing moved, else a bad argument."""
    if size == 0:
        return SocketError(_SOCK_DISCONNECTED)
    return get_rpc_status(Code.INVALID_ARGUMENT, msg)


def response_from_error(err: Exception) -> Response:
    """A response whose status describes the error."""
    if isinstance(err, RpcStatusError):
        status = err.status
    else:
        status = get_status(Code.UNKNOWN, err)
    return Response(status=status)