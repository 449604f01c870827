"""Protocol buffer messages exchanged on a ttrpc connection."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterator, TypeVar

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LEN = 2
_WIRE_FIXED32 = 5

_UINT64_MASK = (1 << 64) - 1

_M = TypeVar("_M", bound="_ProtoMessage")


class DecodeError(ValueError):
    """Raised when bytes cannot be parsed as the requested message."""


class Code(enum.IntEnum):
    """Status codes carried in a :class:`Status`."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


def _encode_varint(value: int) -> bytes:
    value &= _UINT64_MASK
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise DecodeError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _UINT64_MASK, pos
        shift += 7
        if shift >= 70:
            raise DecodeError("varint is too long")


def _to_signed(value: int, bits: int) -> int:
    value &= (1 << bits) - 1
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def _tag(number: int, wire: int) -> bytes:
    return _encode_varint(number << 3 | wire)


def _len_field(number: int, payload: bytes) -> bytes:
    return _tag(number, _WIRE_LEN) + _encode_varint(len(payload)) + payload


def _varint_field(number: int, value: int) -> bytes:
    return _tag(number, _WIRE_VARINT) + _encode_varint(value)


def _iter_fields(data: bytes) -> Iterator[tuple[int, int, object]]:
    data = bytes(data)
    pos = 0
    end = len(data)
    while pos < end:
        key, pos = _decode_varint(data, pos)
        number, wire = key >> 3, key & 0x7
        if number == 0:
            raise DecodeError("invalid field number 0")
        if wire == _WIRE_VARINT:
            value, pos = _decode_varint(data, pos)
        elif wire == _WIRE_LEN:
            length, pos = _decode_varint(data, pos)
            stop = pos + length
            if stop > end:
                raise DecodeError("truncated length-delimited field")
            value = data[pos:stop]
            pos = stop
        elif wire in (_WIRE_FIXED64, _WIRE_FIXED32):
            width = 8 if wire == _WIRE_FIXED64 else 4
            if pos + width > end:
                raise DecodeError("truncated fixed-width field")
            value = data[pos : pos + width]
            pos += width
        else:
            raise DecodeError(f"unsupported wire type {wire}")
        yield number, wire, value


def _expect(wire: int, expected: int, number: int) -> None:
    if wire != expected:
        raise DecodeError(f"field {number} has wire type {wire}, expected {expected}")


def _as_bytes(wire: int, value: object, number: int) -> bytes:
    _expect(wire, _WIRE_LEN, number)
    assert isinstance(value, bytes)
    return value


def _as_string(wire: int, value: object, number: int) -> str:
    raw = _as_bytes(wire, value, number)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"field {number} is not valid UTF-8") from exc


def _as_varint(wire: int, value: object, number: int) -> int:
    _expect(wire, _WIRE_VARINT, number)
    assert isinstance(value, int)
    return value


class _ProtoMessage:
    def encode(self) -> bytes:
        raise NotImplementedError

    def size(self) -> int:
        """Length in bytes of the encoded message."""
        return len(self.encode())


@dataclass
class KeyValue(_ProtoMessage):
    """A single metadata entry."""

    key: str = ""
    value: str = ""

    def encode(self) -> bytes:
        out = bytearray()
        if self.key:
            out += _len_field(1, self.key.encode("utf-8"))
        if self.value:
            out += _len_field(2, self.value.encode("utf-8"))
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> KeyValue:
        msg = cls()
        for number, wire, value in _iter_fields(data):
            if number == 1:
                msg.key = _as_string(wire, value, number)
            elif number == 2:
                msg.value = _as_string(wire, value, number)
        return msg

    def size(self) -> int:
        return len(self.encode())


@dataclass
class Status(_ProtoMessage):
    """Outcome of a call: a code, a message and opaque details."""

    code: int = Code.OK
    message: str = ""
    details: list[bytes] = field(default_factory=list)

    def encode(self) -> bytes:
        out = bytearray()
        if self.code:
            out += _varint_field(1, int(self.code))
        if self.message:
            out += _len_field(2, self.message.encode("utf-8"))
        for detail in self.details:
            out += _len_field(3, bytes(detail))
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> Status:
        msg = cls()
        for number, wire, value in _iter_fields(data):
            if number == 1:
                code = _to_signed(_as_varint(wire, value, number), 32)
                try:
                    msg.code = Code(code)
                except ValueError:
                    msg.code = code
            elif number == 2:
                msg.message = _as_string(wire, value, number)
            elif number == 3:
                msg.details.append(_as_bytes(wire, value, number))
        return msg

    def size(self) -> int:
        return len(self.encode())


@dataclass
class Request(_ProtoMessage):
    """A call of a method on a service."""

    service: str = ""
    method: str = ""
    payload: bytes = b""
    timeout_nano: int = 0
    metadata: list[KeyValue] = field(default_factory=list)

    def encode(self) -> bytes:
        out = bytearray()
        if self.service:
            out += _len_field(1, self.service.encode("utf-8"))
        if self.method:
            out += _len_field(2, self.method.encode("utf-8"))
        if self.payload:
            out += _len_field(3, bytes(self.payload))
        if self.timeout_nano:
            out += _varint_field(4, self.timeout_nano)
        for entry in self.metadata:
            out += _len_field(5, entry.encode())
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> Request:
        msg = cls()
        for number, wire, value in _iter_fields(data):
            if number == 1:
                msg.service = _as_string(wire, value, number)
            elif number == 2:
                msg.method = _as_string(wire, value, number)
            elif number == 3:
                msg.payload = _as_bytes(wire, value, number)
            elif number == 4:
                msg.timeout_nano = _to_signed(_as_varint(wire, value, number), 64)
            elif number == 5:
                msg.metadata.append(KeyValue.decode(_as_bytes(wire, value, number)))
        return msg

    def size(self) -> int:
        return len(self.encode())


@dataclass
class Response(_ProtoMessage):
    """The reply to a :class:`Request`."""

    status: Status | None = None
    payload: bytes = b""

    def encode(self) -> bytes:
        out = bytearray()
        if self.status is not None:
            out += _len_field(1, self.status.encode())
        if self.payload:
            out += _len_field(2, bytes(self.payload))
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> Response:
        msg = cls()
        for number, wire, value in _iter_fields(data):
            if number == 1:
                msg.status = Status.decode(_as_bytes(wire, value, number))
            elif number == 2:
                msg.payload = _as_bytes(wire, value, number)
        return msg

    def size(self) -> int:
        return len(self.encode())

    @property
    def effective_status(self) -> Status:
        """The status, or a default OK status when none was sent."""
        return self.status if self.status is not None else Status()