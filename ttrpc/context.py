"""Per-call context: metadata and a timeout."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, Mapping

from .messages import KeyValue

_NANOS_PER_SECOND = 1_000_000_000


@dataclass
class Context:
    """Metadata and timeout sent along with a request."""

    metadata: dict[str, list[str]] = field(default_factory=dict)
    timeout_nano: int = 0

    def add(self, key: str, value: str) -> None:
        """Append a value to the values already held for ``key``."""
        if key in self.metadata:
            self.metadata[key].append(value)
        else:
            self.metadata[key.lower()] = [value]

    def set(self, key: str, values: Iterable[str]) -> None:
        """Replace the values of ``key``; an empty list removes the key."""
        values = list(values)
        if not values:
            self.metadata.pop(key, None)
        else:
            self.metadata[key.lower()] = values


def with_timeout(timeout_nano: int) -> Context:
    """A context with the given timeout in nanoseconds."""
    return Context(timeout_nano=int(timeout_nano))


def with_duration(duration: timedelta | float) -> Context:
    """A context whose timeout is a timedelta or a number of seconds."""
    if isinstance(duration, timedelta):
        whole_seconds = duration.days * 86_400 + duration.seconds
        nanos = whole_seconds * _NANOS_PER_SECOND + duration.microseconds * 1_000
    else:
        nanos = round(duration * _NANOS_PER_SECOND)
    return with_timeout(nanos)


def with_metadata(metadata: Mapping[str, list[str]]) -> Context:
    """A context carrying the given metadata."""
    return Context(metadata={key: list(values) for key, values in metadata.items()})


def from_pb(kvs: Iterable[KeyValue]) -> dict[str, list[str]]:
    """Group wire key/value pairs into a metadata mapping."""
    meta: dict[str, list[str]] = {}
    for kv in kvs:
        meta.setdefault(kv.key, []).append(kv.value)
    return meta


def to_pb(metadata: Mapping[str, Iterable[str]]) -> list[KeyValue]:
    """Flatten a metadata mapping into wire key/value pairs."""
    return [
        KeyValue(key=key, value=value)
        for key, values in metadata.items()
        for value in values
    ]