"""Mapping from queue descriptor to live connection state."""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING

from io_engine import QDesc

if TYPE_CHECKING:
    from connection import Connection


class RegistryMissError(LookupError):
    """Raised when a descriptor the event loop issued is not registered."""


class RegistryConflictError(RuntimeError):
    """Raised when a live descriptor is registered a second time."""


class ConnectionRegistry:
    def __init__(self) -> None:
        self._connections: dict[QDesc, Connection] = {}

    def insert(self, qd: QDesc, connection: Connection) -> None:
        if qd in self._connections:
            raise RegistryConflictError(f"descriptor {qd} is already registered")
        self._connections[qd] = connection

    def get(self, qd: QDesc) -> Connection:
        try:
            return self._connections[qd]
        except KeyError as exc:
            raise RegistryMissError(f"no connection registered for descriptor {qd}") from exc

    def remove(self, qd: QDesc) -> Connection:
        try:
            return self._connections.pop(qd)
        except KeyError as exc:
            raise RegistryMissError(f"no connection registered for descriptor {qd}") from exc

    def values(self) -> list[Connection]:
        return list(self._connections.values())

    def __contains__(self, qd: object) -> bool:
        return qd in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[QDesc]:
        return iter(list(self._connections))
