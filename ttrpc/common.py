"""Socket address parsing and socket creation for servers and clients."""

from __future__ import annotations

import enum
import errno
import os
import re
import socket
import sys

from .errors import OthersError, SocketError, SystemCallError

VMADDR_CID_ANY = 0xFFFFFFFF
_U32_MAX = 0xFFFFFFFF
_LISTEN_BACKLOG = 10
_UNIX_PREFIX = "unix://"
_VSOCK_PREFIX = "vsock://"

_LINUX = sys.platform.startswith("linux")
_SUN_PATH_MAX = 108 if sys.platform.startswith("linux") else 104
_U32_TEXT = re.compile(r"\+?[0-9]+")


class Domain(enum.Enum):
    """Kind of socket an address names."""

    UNIX = "unix"
    VSOCK = "vsock"


def parse_sockaddr(addr: str) -> tuple[Domain, str]:
    """Split an address into its domain and the part after the scheme."""
    if addr.startswith(_UNIX_PREFIX):
        rest = addr[len(_UNIX_PREFIX):]
        if not _LINUX and rest.startswith("@"):
            raise OthersError(
                "Abstract unix domain socket is not support on this platform"
            )
        return Domain.UNIX, rest
    if _LINUX and addr.startswith(_VSOCK_PREFIX):
        return Domain.VSOCK, addr[len(_VSOCK_PREFIX):]
    raise OthersError(f"Scheme {addr!r} is not supported")


def _parse_u32(text: str, what: str) -> int:
    if _U32_TEXT.fullmatch(text):
        value = int(text)
        if value <= _U32_MAX:
            return value
        reason = "number too large to fit in target type"
    elif not text:
        reason = "cannot parse integer from empty string"
    else:
        reason = "invalid digit found in string"
    raise OthersError(f"failed to parse {what} from {text!r} error: {reason}")


def parse_vsock(addr: str) -> tuple[int, int]:
    """Parse ``cid:port``; a cid of -1 means any cid."""
    parts = addr.split(":")
    if len(parts) != 2:
        raise OthersError(f"sockaddr {addr} is not right for vsock")
    cid_text, port_text = parts
    if cid_text.strip() == "-1":
        cid = VMADDR_CID_ANY
    else:
        cid = _parse_u32(cid_text, "cid")
    port = _parse_u32(port_text, "port")
    return cid, port


def _name_too_long() -> OthersError:
    code = errno.ENAMETOOLONG
    return OthersError(f"{errno.errorcode[code]}: {os.strerror(code)}")


def _make_unix_addr(path: str) -> str | bytes:
    if _LINUX and path.startswith("@"):
        name = path[1:].encode("utf-8")
        if len(name) >= _SUN_PATH_MAX:
            raise _name_too_long()
        return b"\0" + name
    if len(os.fsencode(path)) > _SUN_PATH_MAX:
        raise _name_too_long()
    return path


def make_socket(sockaddr: str) -> tuple[socket.socket, Domain, object]:
    """Create an unbound stream socket and the address it should use."""
    domain, rest = parse_sockaddr(sockaddr)
    if domain is Domain.VSOCK:
        address: object = parse_vsock(rest)
        family = getattr(socket, "AF_VSOCK", None)
        if family is None:
            raise SocketError("vsock sockets are not supported on this platform")
    else:
        address = _make_unix_addr(rest)
        family = socket.AF_UNIX
    try:
        # Python sockets are created close-on-exec already.
        sock = socket.socket(family, socket.SOCK_STREAM)
    except OSError as exc:
        raise SocketError(str(exc)) from exc
    return sock, domain, address


def do_bind(sockaddr: str) -> tuple[socket.socket, Domain]:
    """Create a socket bound to ``sockaddr``."""
    sock, domain, address = make_socket(sockaddr)
    try:
        sock.bind(address)
    except OSError as exc:
        sock.close()
        raise OthersError(str(exc)) from exc
    return sock, domain


def do_listen(sock: socket.socket) -> None:
    """Make a bound socket non-blocking and start listening on it."""
    try:
        sock.setblocking(False)
    except OSError as exc:
        raise OthersError(
            f"failed to set listener fd: {sock.fileno()} as non block: {exc}"
        ) from exc
    try:
        sock.listen(_LISTEN_BACKLOG)
    except OSError as exc:
        raise SocketError(str(exc)) from exc


def client_connect(sockaddr: str) -> socket.socket:
    """Create a socket connected to ``sockaddr``."""
    sock, _, address = make_socket(sockaddr)
    try:
        sock.connect(address)
    except OSError as exc:
        sock.close()
        raise SystemCallError(exc.errno or 0, exc.strerror) from exc
    return sock