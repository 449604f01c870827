import pytest

from ttrpc.messages import Code, DecodeError, KeyValue, Request, Response, Status

PROTOBUF_REQUEST = bytes(
    [
        10, 17, 103, 114, 112, 99, 46, 84, 101, 115, 116, 83, 101, 114, 118, 105, 99, 101, 115, 18,
        4, 84, 101, 115, 116, 26, 9, 1, 2, 3, 4, 5, 6, 7, 8, 9, 32, 128, 218, 196, 9, 42, 24, 10,
        9, 116, 101, 115, 116, 95, 107, 101, 121, 49, 18, 11, 116, 101, 115, 116, 95, 118, 97, 108,
        117, 101, 49,
    ]
)


def new_protobuf_request() -> Request:
    return Request(
        service="grpc.TestServices",
        method="Test",
        timeout_nano=20 * 1000 * 1000,
        metadata=[KeyValue(key="test_key1", value="test_value1")],
        payload=bytes([0x1, 0x2, 0x3, 0x4, 0x5, 0x6, 0x7, 0x8, 0x9]),
    )


def test_protobuf_codec():
    creq = new_protobuf_request()
    buf = creq.encode()
    assert buf == PROTOBUF_REQUEST
    assert Request.decode(buf) == creq
    assert Request.decode(bytearray(PROTOBUF_REQUEST)) == creq


def test_request_size_matches_encoding():
    req = new_protobuf_request()
    assert req.size() == 67
    assert req.size() == len(req.encode())


def test_default_messages_encode_empty():
    assert Request().encode() == b""
    assert Request.decode(b"") == Request()
    assert Response().size() == 0


def test_negative_timeout_round_trip():
    req = Request(service="s", timeout_nano=-5)
    assert Request.decode(req.encode()).timeout_nano == -5


def test_response_round_trip():
    res = Response(status=Status(code=Code.NOT_FOUND, message="missing"), payload=b"\x00\x01")
    decoded = Response.decode(res.encode())
    assert decoded == res
    assert decoded.status.code is Code.NOT_FOUND


def test_response_with_default_status_keeps_status():
    res = Response(status=Status())
    decoded = Response.decode(res.encode())
    assert decoded.status == Status()
    assert Response.decode(b"").effective_status == Status()


def test_status_unknown_code_kept_as_int():
    decoded = Status.decode(Status(code=99, message="m").encode())
    assert decoded.code == 99
    assert decoded.message == "m"


def test_status_details_round_trip():
    status = Status(code=Code.INTERNAL, details=[b"abc", b""])
    assert Status.decode(status.encode()) == status


def test_truncated_input_raises():
    with pytest.raises(DecodeError):
        Request.decode(PROTOBUF_REQUEST[:-1])


def test_wrong_wire_type_raises():
    with pytest.raises(DecodeError):
        Request.decode(bytes([1 << 3 | 0, 1]))


def test_invalid_utf8_raises():
    with pytest.raises(DecodeError):
        KeyValue.decode(bytes([10, 1, 0xFF]))


def test_key_value_round_trip():
    kv = KeyValue(key="k", value="v")
    assert KeyValue.decode(kv.encode()) == kv
    assert kv.size() == len(kv.encode())