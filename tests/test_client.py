import os
import shutil
import socket
import tempfile
import threading

import pytest

from ttrpc.channel import read_message, write_message
from ttrpc.client import Client
from ttrpc.errors import OthersError, RpcStatusError, SocketError
from ttrpc.messages import Code, Request, Response, Status
from ttrpc.net import PipeConnection, PipeListener
from ttrpc.proto import MESSAGE_LENGTH_MAX, MESSAGE_TYPE_REQUEST, MessageHeader


@pytest.fixture
def pair():
    client_sock, server_sock = socket.socketpair()
    client = Client.from_fd(client_sock.detach())
    server = PipeConnection(server_sock)
    yield client, server
    client.close()
    server_sock.close()


def echo_reply(header, req):
    payload = Response(status=Status(), payload=req.payload).encode()
    return MessageHeader.new_response(header.stream_id, len(payload)), payload


def serve(server, count, reply, close_after=False):
    received = []

    def run():
        for _ in range(count):
            header, buf = read_message(server)
            req = Request.decode(buf)
            received.append((header, req))
            if close_after:
                server.close()
                return
            out_header, payload = reply(header, req)
            write_message(server, out_header, payload)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, received


def test_request_echo(pair):
    client, server = pair
    thread, received = serve(server, 1, echo_reply)
    res = client.request(Request(service="svc", method="Call", payload=b"abc"))
    thread.join(5)
    assert res.payload == b"abc"
    header, req = received[0]
    assert header.message_type == MESSAGE_TYPE_REQUEST
    assert header.length == len(req.encode())
    assert (req.service, req.method) == ("svc", "Call")


def test_stream_ids_are_odd_and_increasing(pair):
    client, server = pair
    thread, received = serve(server, 2, echo_reply)
    client.request(Request(payload=b"a"))
    client.request(Request(payload=b"b"))
    thread.join(5)
    assert [header.stream_id for header, _ in received] == [1, 3]


def test_error_status_is_raised(pair):
    client, server = pair

    def reply(header, req):
        payload = Response(status=Status(code=Code.NOT_FOUND, message="missing")).encode()
        return MessageHeader.new_response(header.stream_id, len(payload)), payload

    serve(server, 1, reply)
    with pytest.raises(RpcStatusError) as info:
        client.request(Request(service="s", method="m"))
    assert info.value.status.code == Code.NOT_FOUND
    assert info.value.status.message == "missing"


def test_timeout_without_answer(pair):
    client, _ = pair
    with pytest.raises(OthersError, match="timeout"):
        client.request(Request(service="s", method="m", timeout_nano=50_000_000))


def test_oversize_request_rejected(pair):
    client, _ = pair
    with pytest.raises(OthersError, match="exceed maximum message size"):
        client.request(Request(payload=b"x" * (MESSAGE_LENGTH_MAX + 1)))


def test_peer_close_fails_pending_request(pair):
    client, server = pair
    serve(server, 1, echo_reply, close_after=True)
    with pytest.raises(SocketError, match="socket disconnected"):
        client.request(Request(service="s", method="m"))


def test_non_response_frame_is_malformed(pair):
    client, server = pair

    def reply(header, req):
        return MessageHeader.new_data(header.stream_id, 2), b"\x00\x00"

    serve(server, 1, reply)
    with pytest.raises(OthersError, match="malformed"):
        client.request(Request(service="s", method="m"))


def test_unparseable_response(pair):
    client, server = pair

    def reply(header, req):
        return MessageHeader.new_response(header.stream_id, 1), b"\xff"

    serve(server, 1, reply)
    with pytest.raises(OthersError, match="Unpack response error"):
        client.request(Request(service="s", method="m"))


def test_request_after_close_fails(pair):
    client, _ = pair
    client.close()
    with pytest.raises(OthersError, match="closed channel"):
        client.request(Request(service="s", method="m"))


def test_connect_through_listener():
    directory = tempfile.mkdtemp(prefix="tt")
    path = os.path.join(directory, "c.sock")
    try:
        listener = PipeListener.bind("unix://" + path)
        client = Client.connect("unix://" + path)
        conn = listener.accept()
        thread, _ = serve(conn, 1, echo_reply)
        with client:
            res = client.request(Request(service="s", method="m", payload=b"hi"))
        thread.join(5)
        assert res.payload == b"hi"
        conn.close()
        listener.close()
    finally:
        shutil.rmtree(directory, ignore_errors=True)