import errno

from ttrpc.errors import (
    EofError,
    OthersError,
    RpcStatusError,
    SocketError,
    SystemCallError,
    get_rpc_status,
    get_status,
    response_from_error,
    sock_error_msg,
)
from ttrpc.messages import Code, Response, Status


def test_sock_error_msg_zero_size_is_disconnect():
    err = sock_error_msg(0, "ignored")
    assert isinstance(err, SocketError)
    assert err.message == "socket disconnected"


def test_sock_error_msg_nonzero_is_invalid_argument():
    err = sock_error_msg(5, "too small")
    assert isinstance(err, RpcStatusError)
    assert err.status.code == Code.INVALID_ARGUMENT
    assert err.status.message == "too small"


def test_get_status_stringifies_message():
    status = get_status(Code.OK, 42)
    assert status.code == Code.OK
    assert status.message == "42"


def test_get_rpc_status_wraps_status():
    err = get_rpc_status(Code.NOT_FOUND, "gone")
    assert err.status == get_status(Code.NOT_FOUND, "gone")


def test_response_from_rpc_status_keeps_status():
    status = Status(code=Code.ABORTED, message="stop")
    res = response_from_error(RpcStatusError(status))
    assert res == Response(status=status)


def test_response_from_other_error_is_unknown():
    err = SocketError("boom")
    res = response_from_error(err)
    assert res.status.code == Code.UNKNOWN
    assert res.status.message == str(err)
    assert "boom" in res.status.message


def test_error_texts():
    assert str(EofError()) == "eof"
    assert str(OthersError("abc")) == "ttrpc err: abc"
    assert OthersError("abc").message == "abc"


def test_system_call_error_keeps_errno():
    err = SystemCallError(errno.EBADF)
    assert err.errno == errno.EBADF
    assert err.description in str(err)