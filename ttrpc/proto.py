"""Wire framing of ttrpc messages: a ten byte header followed by a payload."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Generic, Protocol, TypeVar

from .errors import OthersError, SocketError, TtrpcError, get_rpc_status
from .messages import Code

MESSAGE_HEADER_LENGTH = 10
MESSAGE_LENGTH_MAX = 4 << 20
DEFAULT_PAGE_SIZE = 4 << 10

MESSAGE_TYPE_REQUEST = 0x1
MESSAGE_TYPE_RESPONSE = 0x2
MESSAGE_TYPE_DATA = 0x3

FLAG_REMOTE_CLOSED = 0x1
FLAG_REMOTE_OPEN = 0x2
FLAG_NO_DATA = 0x4

_HEADER = struct.Struct(">IIBB")


class _Codec(Protocol):
    def encode(self) -> bytes: ...

    def size(self) -> int: ...


C = TypeVar("C", bound=_Codec)


def check_oversize(length: int, return_rpc_error: bool) -> None:
    """Raise if a message of this length exceeds the maximum size."""
    if length > MESSAGE_LENGTH_MAX:
        msg = f"message length {length} exceed maximum message size of {MESSAGE_LENGTH_MAX}"
        if return_rpc_error:
            raise get_rpc_status(Code.INVALID_ARGUMENT, msg)
        raise OthersError(msg)


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = reader.read(remaining)
        if not chunk:
            raise EOFError(f"expected {size} bytes, got {size - remaining}")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _discard(reader: BinaryIO, size: int) -> None:
    remaining = size
    while remaining > 0:
        once = min(DEFAULT_PAGE_SIZE, remaining)
        _read_exact(reader, once)
        remaining -= once


def _write_all(writer: BinaryIO, data: bytes) -> None:
    writer.write(data)
    flush = getattr(writer, "flush", None)
    if flush is not None:
        flush()


@dataclass
class MessageHeader:
    """Header of every ttrpc frame."""

    length: int = 0
    stream_id: int = 0
    message_type: int = 0
    flags: int = 0

    @classmethod
    def new_request(cls, stream_id: int, length: int) -> MessageHeader:
        return cls(length, stream_id, MESSAGE_TYPE_REQUEST, 0)

    @classmethod
    def new_response(cls, stream_id: int, length: int) -> MessageHeader:
        return cls(length, stream_id, MESSAGE_TYPE_RESPONSE, 0)

    @classmethod
    def new_data(cls, stream_id: int, length: int) -> MessageHeader:
        return cls(length, stream_id, MESSAGE_TYPE_DATA, 0)

    @classmethod
    def from_bytes(cls, data: bytes) -> MessageHeader:
        """Parse the first ten bytes of ``data``."""
        if len(data) < MESSAGE_HEADER_LENGTH:
            raise ValueError(
                f"message header needs {MESSAGE_HEADER_LENGTH} bytes, got {len(data)}"
            )
        return cls(*_HEADER.unpack_from(bytes(data[:MESSAGE_HEADER_LENGTH])))

    def to_bytes(self) -> bytes:
        return _HEADER.pack(self.length, self.stream_id, self.message_type, self.flags)

    def add_flags(self, flags: int) -> None:
        self.flags |= flags

    @classmethod
    def read_from(cls, reader: BinaryIO) -> MessageHeader:
        """Read a header; raises EOFError if the stream ends early."""
        return cls.from_bytes(_read_exact(reader, MESSAGE_HEADER_LENGTH))

    def write_to(self, writer: BinaryIO) -> None:
        _write_all(writer, self.to_bytes())


class MessageReturnError(TtrpcError):
    """A frame was read but must be answered with an error."""

    def __init__(self, header: MessageHeader, error: TtrpcError) -> None:
        super().__init__(str(error))
        self.header = header
        self.error = error


@dataclass
class GenMessage:
    """A frame whose payload has not been decoded."""

    header: MessageHeader = field(default_factory=MessageHeader)
    payload: bytes = b""

    @classmethod
    def read_from(cls, reader: BinaryIO) -> GenMessage:
        try:
            header = MessageHeader.read_from(reader)
            try:
                check_oversize(header.length, True)
            except TtrpcError as exc:
                _discard(reader, header.length)
                raise MessageReturnError(header, exc) from exc
            payload = _read_exact(reader, header.length)
        except (OSError, EOFError) as exc:
            raise SocketError(str(exc)) from exc
        return cls(header, payload)

    def write_to(self, writer: BinaryIO) -> None:
        try:
            self.header.write_to(writer)
            _write_all(writer, bytes(self.payload))
        except OSError as exc:
            raise SocketError(str(exc)) from exc

    def check(self) -> None:
        check_oversize(self.header.length, True)


@dataclass
class Message(Generic[C]):
    """A frame with a decoded payload."""

    header: MessageHeader
    payload: C

    @classmethod
    def new_request(cls, stream_id: int, payload: C) -> Message[C]:
        size = payload.size()
        check_oversize(size, False)
        return cls(MessageHeader.new_request(stream_id, size), payload)

    @classmethod
    def from_gen(cls, gen: GenMessage, payload_type) -> Message:
        return cls(gen.header, payload_type.decode(gen.payload))

    def to_gen(self) -> GenMessage:
        return GenMessage(self.header, self.payload.encode())

    @classmethod
    def read_from(cls, reader: BinaryIO, payload_type) -> Message:
        """Read a frame; an oversized body is skipped and an empty payload returned."""
        try:
            header = MessageHeader.read_from(reader)
            try:
                check_oversize(header.length, True)
            except TtrpcError:
                _discard(reader, header.length)
                content = b""
            else:
                content = _read_exact(reader, header.length)
        except (OSError, EOFError) as exc:
            raise SocketError(str(exc)) from exc
        try:
            payload = payload_type.decode(content)
        except ValueError as exc:
            raise OthersError(f"Decode payload failed.{exc}") from exc
        return cls(header, payload)

    def write_to(self, writer: BinaryIO) -> None:
        try:
            self.header.write_to(writer)
        except OSError as exc:
            raise SocketError(str(exc)) from exc
        try:
            content = self.payload.encode()
        except (ValueError, TypeError) as exc:
            raise OthersError(f"Encode payload failed.{exc}") from exc
        try:
            _write_all(writer, content)
        except OSError as exc:
            raise SocketError(str(exc)) from exc