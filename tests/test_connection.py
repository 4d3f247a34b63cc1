"""Unit tests for the per-connection receive-to-send state machine."""

from __future__ import annotations

from pathlib import Path

import pytest

from buffers import MultiSegmentError, ScatterGatherArray
from connection import Connection, ConnectionStateMachine, UnknownSendError
from handlers.static_file import StaticFileResponder
from io_engine import QDesc, QToken
from metrics import MetricsRegistry


class RecordingEngine:
    """Stands in for the I/O engine and records submitted sends."""

    def __init__(self) -> None:
        self.pushes: list[tuple[QDesc, bytes]] = []
        self.allocated = 0
        self.freed = 0
        self._next_token = 0

    def sgaalloc(self, size: int) -> ScatterGatherArray:
        self.allocated += 1
        return ScatterGatherArray.allocate(size)

    def sgafree(self, sga: ScatterGatherArray) -> None:
        sga.release()
        self.freed += 1

    def push(self, qd: QDesc, sga: ScatterGatherArray) -> QToken:
        self._next_token += 1
        self.pushes.append((qd, sga.to_bytes()))
        return QToken(self._next_token)


def _resource(tmp_path: Path, content: bytes = b"<p>hello</p>") -> Path:
    resource = tmp_path / "hello.html"
    resource.write_bytes(content)
    return resource


def _machine(
    resource: Path,
    *,
    history_limit: int = 16,
    metrics: MetricsRegistry | None = None,
) -> tuple[ConnectionStateMachine, RecordingEngine]:
    engine = RecordingEngine()
    machine = ConnectionStateMachine(
        engine,  # type: ignore[arg-type]
        StaticFileResponder(resource),
        history_limit=history_limit,
        metrics=metrics,
    )
    return machine, engine


def _connection(qd: int = 7) -> Connection:
    return Connection(qd=QDesc(qd), address=("127.0.0.1", 40000))


def test_receive_submits_exactly_sized_response(tmp_path: Path) -> None:
    machine, engine = _machine(_resource(tmp_path))
    connection = _connection()

    token = machine.on_receive(connection, ScatterGatherArray.from_bytes(b"GET / HTTP/1.1\r\n\r\n"))

    assert token is not None
    assert engine.pushes == [
        (QDesc(7), b"HTTP/1.1 200 OK\r\nContent-Length: 12\r\n\r\n<p>hello</p>"),
    ]
    assert connection.pending_sends[token].nbytes == len(engine.pushes[0][1])
    assert connection.requests_served == 1
    assert connection.bytes_in == 18
    assert len(connection.receive_queue) == 1


def test_zero_length_receive_is_a_no_op(tmp_path: Path) -> None:
    machine, engine = _machine(_resource(tmp_path))
    connection = _connection()
    empty = ScatterGatherArray.from_bytes(b"")

    token = machine.on_receive(connection, empty)

    assert token is None
    assert engine.pushes == []
    assert empty.released is True
    assert engine.freed == 1
    assert connection.requests_served == 0


def test_multi_segment_receive_fails_fast(tmp_path: Path) -> None:
    machine, engine = _machine(_resource(tmp_path))
    connection = _connection()
    split = ScatterGatherArray([bytearray(b"GET / "), bytearray(b"HTTP/1.1\r\n\r\n")])

    with pytest.raises(MultiSegmentError):
        machine.on_receive(connection, split)

    assert engine.pushes == []
    assert not connection.receive_queue


def test_send_completion_frees_buffer_exactly_once(tmp_path: Path) -> None:
    machine, engine = _machine(_resource(tmp_path))
    connection = _connection()
    token = machine.on_receive(connection, ScatterGatherArray.from_bytes(b"GET /"))
    assert token is not None
    send_buffer = connection.pending_sends[token]

    bytes_sent = machine.on_send_complete(connection, token)

    assert bytes_sent == len(engine.pushes[0][1])
    assert send_buffer.released is True
    assert token not in connection.pending_sends
    with pytest.raises(UnknownSendError):
        machine.on_send_complete(connection, token)


def test_history_is_bounded_and_evicted_buffers_are_freed(tmp_path: Path) -> None:
    machine, engine = _machine(_resource(tmp_path), history_limit=2)
    connection = _connection()
    received = [ScatterGatherArray.from_bytes(f"req-{index}".encode()) for index in range(3)]

    for sga in received:
        machine.on_receive(connection, sga)

    assert list(connection.receive_queue) == received[1:]
    assert received[0].released is True
    assert engine.freed == 1


def test_unreadable_resource_produces_isolated_500(tmp_path: Path) -> None:
    metrics = MetricsRegistry()
    machine, engine = _machine(tmp_path / "missing.html", metrics=metrics)
    connection = _connection()

    token = machine.on_receive(connection, ScatterGatherArray.from_bytes(b"GET / HTTP/1.1\r\n\r\n"))

    assert token is not None
    assert engine.pushes[0][1] == (
        b"HTTP/1.1 500 Internal Server Error\r\n"
        b"Content-Length: 21\r\n\r\n"
        b"Internal Server Error"
    )
    assert metrics.snapshot()["processor_errors_by_type"] == {"ResourceUnavailableError": 1}


def test_same_request_on_two_connections_yields_identical_responses(tmp_path: Path) -> None:
    machine, engine = _machine(_resource(tmp_path))
    request = b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n"

    machine.on_receive(_connection(1), ScatterGatherArray.from_bytes(request))
    machine.on_receive(_connection(2), ScatterGatherArray.from_bytes(request))

    (first_qd, first), (second_qd, second) = engine.pushes
    assert (first_qd, second_qd) == (QDesc(1), QDesc(2))
    assert first == second


def test_release_frees_history_and_pending_sends(tmp_path: Path) -> None:
    machine, engine = _machine(_resource(tmp_path))
    connection = _connection()
    for _ in range(3):
        machine.on_receive(connection, ScatterGatherArray.from_bytes(b"GET /"))

    machine.release(connection)

    assert not connection.receive_queue
    assert not connection.pending_sends
    assert engine.freed == 6
    assert engine.allocated == 3


def test_negative_history_limit_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        _machine(_resource(tmp_path), history_limit=-1)
