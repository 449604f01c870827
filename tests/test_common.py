import errno
import os
import shutil
import socket
import tempfile

import pytest

from ttrpc import common
from ttrpc.common import Domain
from ttrpc.errors import OthersError, SystemCallError


@pytest.fixture
def short_dir():
    path = tempfile.mkdtemp(prefix="tt", dir="/tmp")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.mark.parametrize(
    "addr, domain, rest",
    [
        ("unix:///run/a.sock", Domain.UNIX, "/run/a.sock"),
        ("vsock://8:1024", Domain.VSOCK, "8:1024"),
        ("unix://@/run/b.sock", Domain.UNIX, "@/run/b.sock"),
    ],
)
def test_parse_sockaddr_linux_ok(monkeypatch, addr, domain, rest):
    monkeypatch.setattr(common, "_LINUX", True)
    assert common.parse_sockaddr(addr) == (domain, rest)


@pytest.mark.parametrize("addr", ["Vsock://8:1025", "abc:///run/c.sock"])
def test_parse_sockaddr_linux_err(monkeypatch, addr):
    monkeypatch.setattr(common, "_LINUX", True)
    with pytest.raises(OthersError):
        common.parse_sockaddr(addr)


def test_parse_sockaddr_other_platform_ok(monkeypatch):
    monkeypatch.setattr(common, "_LINUX", False)
    assert common.parse_sockaddr("unix:///run/a.sock") == (Domain.UNIX, "/run/a.sock")


@pytest.mark.parametrize(
    "addr",
    [
        "vsock:///run/c.sock",
        "Vsock:///run/c.sock",
        "unix://@/run/b.sock",
        "abc:///run/c.sock",
    ],
)
def test_parse_sockaddr_other_platform_err(monkeypatch, addr):
    monkeypatch.setattr(common, "_LINUX", False)
    with pytest.raises(OthersError):
        common.parse_sockaddr(addr)


@pytest.mark.parametrize(
    "addr, expected",
    [
        ("-1:1024", (common.VMADDR_CID_ANY, 1024)),
        ("0:1", (0, 1)),
        ("1:2", (1, 2)),
        ("4294967294:3", (4294967294, 3)),
        ("4294967295:4", (common.VMADDR_CID_ANY, 4)),
    ],
)
def test_parse_vsock(addr, expected):
    assert common.parse_vsock(addr) == expected


@pytest.mark.parametrize("addr", ["1", "1:2:3", "x:2", "1:y", "4294967296:1", ":1"])
def test_parse_vsock_errors(addr):
    with pytest.raises(OthersError):
        common.parse_vsock(addr)


def test_parse_vsock_error_message():
    with pytest.raises(OthersError) as info:
        common.parse_vsock("1")
    assert info.value.message == "sockaddr 1 is not right for vsock"


def test_make_socket_unix_path(short_dir):
    path = os.path.join(short_dir, "a.sock")
    sock, domain, address = common.make_socket("unix://" + path)
    try:
        assert domain is Domain.UNIX
        assert sock.family == socket.AF_UNIX
        assert address == path
    finally:
        sock.close()


def test_make_socket_abstract_address(monkeypatch):
    monkeypatch.setattr(common, "_LINUX", True)
    sock, domain, address = common.make_socket("unix://@/run/b.sock")
    try:
        assert domain is Domain.UNIX
        assert address == b"\0/run/b.sock"
    finally:
        sock.close()


def test_make_socket_path_too_long():
    with pytest.raises(OthersError) as info:
        common.make_socket("unix:///" + "a" * 300)
    assert "ENAMETOOLONG" in info.value.message


def test_make_socket_bad_vsock_address(monkeypatch):
    monkeypatch.setattr(common, "_LINUX", True)
    with pytest.raises(OthersError):
        common.make_socket("vsock://1")


def test_do_bind_unsupported_scheme():
    with pytest.raises(OthersError):
        common.do_bind("tcp://127.0.0.1:80")


def test_bind_listen_connect(short_dir):
    addr = "unix://" + os.path.join(short_dir, "srv.sock")
    listener, domain = common.do_bind(addr)
    try:
        assert domain is Domain.UNIX
        common.do_listen(listener)
        assert listener.getblocking() is False
        client = common.client_connect(addr)
        try:
            conn, _ = listener.accept()
            conn.setblocking(True)
            try:
                client.sendall(b"ping")
                assert conn.recv(4) == b"ping"
            finally:
                conn.close()
        finally:
            client.close()
    finally:
        listener.close()


def test_do_bind_twice_fails(short_dir):
    addr = "unix://" + os.path.join(short_dir, "dup.sock")
    listener, _ = common.do_bind(addr)
    try:
        with pytest.raises(OthersError):
            common.do_bind(addr)
    finally:
        listener.close()


def test_client_connect_missing_socket(short_dir):
    addr = "unix://" + os.path.join(short_dir, "missing.sock")
    with pytest.raises(SystemCallError) as info:
        common.client_connect(addr)
    assert info.value.errno in (errno.ENOENT, errno.ECONNREFUSED)