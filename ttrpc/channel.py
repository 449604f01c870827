"""Reading and writing whole ttrpc frames over a blocking connection."""

from __future__ import annotations

import logging
from typing import Protocol

from .errors import SocketError, TtrpcError, sock_error_msg
from .proto import (
    DEFAULT_PAGE_SIZE,
    MESSAGE_HEADER_LENGTH,
    MessageHeader,
    MessageReturnError,
    check_oversize,
)

logger = logging.getLogger(__name__)


class _Connection(Protocol):
    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> int: ...


def _read_count(conn: _Connection, count: int) -> bytes:
    """Read up to ``count`` bytes, stopping early if the peer closes."""
    buf = bytearray()
    while len(buf) < count:
        try:
            chunk = conn.read(count - len(buf))
        except (OSError, TtrpcError) as exc:
            raise SocketError(str(exc)) from exc
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def _write_count(conn: _Connection, data: bytes) -> int:
    """Write all of ``data``; returns how much was written."""
    written = 0
    view = memoryview(data)
    while written < len(data):
        try:
            count = conn.write(bytes(view[written:]))
        except (OSError, TtrpcError) as exc:
            raise SocketError(str(exc)) from exc
        if not count:
            break
        written += count
    return written


def _discard_count(conn: _Connection, count: int) -> None:
    remaining = count
    while remaining > 0:
        once = min(DEFAULT_PAGE_SIZE, remaining)
        _read_count(conn, once)
        remaining -= once


def _read_message_header(conn: _Connection) -> MessageHeader:
    buf = _read_count(conn, MESSAGE_HEADER_LENGTH)
    size = len(buf)
    if size != MESSAGE_HEADER_LENGTH:
        raise sock_error_msg(size, f"Message header length {size} is too small")
    return MessageHeader.from_bytes(buf)


def read_message(conn: _Connection) -> tuple[MessageHeader, bytes]:
    """Read one frame.

    An oversized frame is skipped and reported with :class:`MessageReturnError`
    so that the caller can answer it.
    """
    header = _read_message_header(conn)
    logger.debug("Got Message header %r", header)

    try:
        check_oversize(header.length, True)
    except TtrpcError as exc:
        _discard_count(conn, header.length)
        raise MessageReturnError(header, exc) from exc

    buf = _read_count(conn, header.length)
    size = len(buf)
    if size != header.length:
        raise sock_error_msg(size, f"Message length {size} is not {header.length}")
    logger.debug("Got Message body %r", buf)
    return header, buf


def write_message(conn: _Connection, header: MessageHeader, payload: bytes) -> None:
    """Write a frame made of ``header`` and ``payload``."""
    size = _write_count(conn, header.to_bytes())
    if size != MESSAGE_HEADER_LENGTH:
        raise sock_error_msg(size, f"Send Message header length size {size} is not right")

    payload = bytes(payload)
    size = _write_count(conn, payload)
    if size != len(payload):
        raise sock_error_msg(size, f"Send Message length size {size} is not right")