"""Helpers shared by method handlers: sending responses and the call context."""

from __future__ import annotations

import abc
import threading
from dataclasses import dataclass, field
from typing import Any

from .errors import OthersError, TtrpcError, response_from_error
from .messages import Request, Response
from .proto import MESSAGE_TYPE_RESPONSE, MessageHeader, check_oversize


def response_to_channel(stream_id: int, res: Response, tx: Any) -> None:
    """Frame ``res`` for ``stream_id`` and put it on the response queue ``tx``.

    A response too large to send is replaced by an error response.
    """
    buf = res.encode()
    try:
        check_oversize(len(buf), True)
    except TtrpcError as exc:
        buf = response_from_error(exc).encode()

    header = MessageHeader(
        length=len(buf),
        stream_id=stream_id,
        message_type=MESSAGE_TYPE_RESPONSE,
        flags=0,
    )
    try:
        tx.put((header, buf))
    except Exception as exc:
        raise OthersError(str(exc)) from exc


def response_error_to_channel(stream_id: int, err: Exception, tx: Any) -> None:
    """Send a response whose status describes ``err``."""
    response_to_channel(stream_id, response_from_error(err), tx)


@dataclass
class TtrpcContext:
    """What a method handler knows about the call it serves."""

    fd: int
    cancel: threading.Event
    mh: MessageHeader
    res_tx: Any
    metadata: dict[str, list[str]] = field(default_factory=dict)
    timeout_nano: int = 0


class MethodHandler(abc.ABC):
    """Serves one method; answers through ``ctx.res_tx``."""

    @abc.abstractmethod
    def handler(self, ctx: TtrpcContext, req: Request) -> None:
        """Handle ``req``; raising ends the connection."""