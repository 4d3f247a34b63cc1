"""Completion-based socket I/O engine built on the selectors module.

Operations are submitted without blocking and return a ``QToken``. The
caller later collects results with ``wait_any``, which drives readiness
events from the selector until one of the requested tokens completes.
"""

from __future__ import annotations

import enum
import itertools
import logging
import selectors
import socket
import time
from collections import deque
from dataclasses import dataclass, field
from typing import NewType

from buffers import ScatterGatherArray
from config import RECV_BUFFER_SIZE

logger = logging.getLogger(__name__)

QDesc = NewType("QDesc", int)
QToken = NewType("QToken", int)
Address = tuple[str, int]


class IOEngineError(Exception):
    """Base error for misuse of the completion I/O engine."""


class UnknownDescriptorError(IOEngineError, LookupError):
    """Raised when a queue descriptor is not open on this engine."""


class UnknownTokenError(IOEngineError, LookupError):
    """Raised when waiting on a token that is neither outstanding nor completed."""


class ConnectionClosedError(ConnectionError):
    """Reported for a receive issued after the peer closed its side."""


class OperationKind(enum.Enum):
    ACCEPT = "accept"
    POP = "pop"
    PUSH = "push"


@dataclass(frozen=True, slots=True)
class AcceptCompletion:
    token: QToken
    qd: QDesc
    new_qd: QDesc
    address: Address


@dataclass(frozen=True, slots=True)
class PopCompletion:
    token: QToken
    qd: QDesc
    sga: ScatterGatherArray


@dataclass(frozen=True, slots=True)
class PushCompletion:
    token: QToken
    qd: QDesc
    sga: ScatterGatherArray


@dataclass(frozen=True, slots=True)
class FailedCompletion:
    token: QToken
    qd: QDesc
    kind: OperationKind
    error: OSError


Completion = AcceptCompletion | PopCompletion | PushCompletion | FailedCompletion


@dataclass(slots=True)
class _PendingPush:
    token: QToken
    sga: ScatterGatherArray
    view: memoryview
    sent: int = 0


@dataclass(slots=True)
class _Queue:
    qd: QDesc
    sock: socket.socket
    listening: bool = False
    eof: bool = False
    events: int = 0
    accepts: deque[QToken] = field(default_factory=deque)
    pops: deque[QToken] = field(default_factory=deque)
    pushes: deque[_PendingPush] = field(default_factory=deque)


class IOEngine:
    def __init__(
        self,
        *,
        recv_size: int = RECV_BUFFER_SIZE,
        selector: selectors.BaseSelector | None = None,
    ) -> None:
        if recv_size <= 0:
            raise ValueError("recv_size must be positive")
        self._recv_size = recv_size
        self._selector = selector or selectors.DefaultSelector()
        self._queues: dict[QDesc, _Queue] = {}
        self._operations: dict[QToken, tuple[OperationKind, QDesc]] = {}
        self._completed: dict[QToken, Completion] = {}
        self._qd_seq = itertools.count(1)
        self._token_seq = itertools.count(1)
        self._allocated = 0
        self._freed = 0
        self._closed = False

        self._wakeup_reader, self._wakeup_writer = socket.socketpair()
        self._wakeup_reader.setblocking(False)
        self._wakeup_writer.setblocking(False)
        self._selector.register(self._wakeup_reader, selectors.EVENT_READ, data=None)

    def __enter__(self) -> "IOEngine":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.shutdown()

    @property
    def outstanding_buffers(self) -> int:
        """Buffers allocated by this engine that have not been freed yet."""
        return self._allocated - self._freed

    @property
    def pending_operations(self) -> int:
        return len(self._operations)

    def is_open(self, qd: QDesc) -> bool:
        return qd in self._queues

    # Setup. Failures here raise OSError synchronously.

    def socket(self) -> QDesc:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setblocking(False)
        return self._add_queue(sock)

    def bind(self, qd: QDesc, address: Address) -> None:
        queue = self._queue(qd)
        queue.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        queue.sock.bind(address)

    def listen(self, qd: QDesc, backlog: int) -> None:
        queue = self._queue(qd)
        queue.sock.listen(backlog)
        queue.listening = True

    def local_address(self, qd: QDesc) -> Address:
        host, port = self._queue(qd).sock.getsockname()[:2]
        return host, port

    # Submission. Every call returns a fresh token and never blocks.

    def accept(self, qd: QDesc) -> QToken:
        queue = self._queue(qd)
        if not queue.listening:
            raise IOEngineError(f"descriptor {qd} is not listening")
        token = self._new_token(OperationKind.ACCEPT, qd)
        queue.accepts.append(token)
        self._update_interest(queue)
        return token

    def pop(self, qd: QDesc) -> QToken:
        queue = self._queue(qd)
        token = self._new_token(OperationKind.POP, qd)
        if queue.eof:
            self._fail(token, OperationKind.POP, ConnectionClosedError(f"peer closed descriptor {qd}"))
            return token
        queue.pops.append(token)
        self._update_interest(queue)
        return token

    def push(self, qd: QDesc, sga: ScatterGatherArray) -> QToken:
        queue = self._queue(qd)
        view = sga.single_segment()
        token = self._new_token(OperationKind.PUSH, qd)
        if len(view) == 0:
            self._complete(PushCompletion(token=token, qd=qd, sga=sga))
            return token
        sga.in_flight = True
        queue.pushes.append(_PendingPush(token=token, sga=sga, view=view))
        self._update_interest(queue)
        return token

    def wait_any(
        self,
        tokens: list[QToken],
        timeout: float | None = None,
    ) -> tuple[int, Completion] | None:
        """Block until one of ``tokens`` completes.

        Returns the index of the completed token within ``tokens`` together
        with its completion, or ``None`` when the timeout expires or
        ``wakeup`` is called.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            for index, token in enumerate(tokens):
                completion = self._completed.pop(token, None)
                if completion is not None:
                    return index, completion
                if token not in self._operations:
                    raise UnknownTokenError(f"token {token} is not outstanding")

            remaining: float | None = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
            if self._poll(remaining):
                return None

    def wakeup(self) -> None:
        """Interrupt a blocked ``wait_any``. Safe to call from any thread."""
        if self._closed:
            return
        try:
            self._wakeup_writer.send(b"\0")
        except BlockingIOError:
            # A wakeup byte is already pending.
            return
        except OSError:
            # Lost a race with shutdown closing the socketpair.
            if not self._closed:
                raise

    # Buffers.

    def sgaalloc(self, size: int) -> ScatterGatherArray:
        sga = ScatterGatherArray.allocate(size)
        self._allocated += 1
        return sga

    def sgafree(self, sga: ScatterGatherArray) -> None:
        sga.release()
        self._freed += 1

    # Teardown.

    def close(self, qd: QDesc) -> list[QToken]:
        """Close ``qd`` and abandon its outstanding operations.

        Returns the abandoned tokens so the caller can stop waiting on them.
        Buffers of abandoned pushes are handed back to their owner.
        """
        queue = self._queues.pop(qd, None)
        if queue is None:
            raise UnknownDescriptorError(f"descriptor {qd} is not open")
        if queue.events:
            self._selector.unregister(queue.sock)
            queue.events = 0

        abandoned: list[QToken] = [*queue.accepts, *queue.pops]
        for pending in queue.pushes:
            pending.sga.in_flight = False
            abandoned.append(pending.token)
        for token in abandoned:
            self._operations.pop(token, None)

        for token, completion in list(self._completed.items()):
            if completion.qd != qd:
                continue
            del self._completed[token]
            abandoned.append(token)
            if isinstance(completion, PopCompletion):
                self.sgafree(completion.sga)
            elif isinstance(completion, AcceptCompletion) and completion.new_qd in self._queues:
                self.close(completion.new_qd)

        queue.sock.close()
        return abandoned

    def shutdown(self) -> None:
        if self._closed:
            return
        for qd in list(self._queues):
            if qd in self._queues:
                self.close(qd)
        self._closed = True
        self._selector.unregister(self._wakeup_reader)
        self._wakeup_reader.close()
        self._wakeup_writer.close()
        self._selector.close()

    # Internals.

    def _add_queue(self, sock: socket.socket) -> QDesc:
        qd = QDesc(next(self._qd_seq))
        self._queues[qd] = _Queue(qd=qd, sock=sock)
        return qd

    def _queue(self, qd: QDesc) -> _Queue:
        try:
            return self._queues[qd]
        except KeyError as exc:
            raise UnknownDescriptorError(f"descriptor {qd} is not open") from exc

    def _new_token(self, kind: OperationKind, qd: QDesc) -> QToken:
        token = QToken(next(self._token_seq))
        self._operations[token] = (kind, qd)
        return token

    def _complete(self, completion: Completion) -> None:
        self._operations.pop(completion.token, None)
        self._completed[completion.token] = completion

    def _fail(self, token: QToken, kind: OperationKind, error: OSError) -> None:
        _kind, qd = self._operations[token]
        self._complete(FailedCompletion(token=token, qd=qd, kind=kind, error=error))

    def _track(self, sga: ScatterGatherArray) -> ScatterGatherArray:
        self._allocated += 1
        return sga

    def _poll(self, timeout: float | None) -> bool:
        woken = False
        for key, mask in self._selector.select(timeout=timeout):
            if key.data is None:
                self._drain_wakeup()
                woken = True
                continue

            queue = self._queues.get(key.data)
            if queue is None:
                continue
            if mask & selectors.EVENT_READ:
                if queue.listening:
                    self._progress_accepts(queue)
                else:
                    self._progress_pop(queue)
            if mask & selectors.EVENT_WRITE:
                self._progress_pushes(queue)
            self._update_interest(queue)
        return woken

    def _drain_wakeup(self) -> None:
        while True:
            try:
                if not self._wakeup_reader.recv(512):
                    return
            except BlockingIOError:
                return

    def _progress_accepts(self, queue: _Queue) -> None:
        while queue.accepts:
            try:
                client_socket, address = queue.sock.accept()
            except BlockingIOError:
                return
            except OSError as exc:
                logger.warning("accept failed on descriptor %s: %s", queue.qd, exc)
                self._fail(queue.accepts.popleft(), OperationKind.ACCEPT, exc)
                return

            client_socket.setblocking(False)
            new_qd = self._add_queue(client_socket)
            token = queue.accepts.popleft()
            self._complete(
                AcceptCompletion(
                    token=token,
                    qd=queue.qd,
                    new_qd=new_qd,
                    address=(address[0], address[1]),
                )
            )

    def _progress_pop(self, queue: _Queue) -> None:
        if not queue.pops:
            return
        try:
            data = queue.sock.recv(self._recv_size)
        except BlockingIOError:
            return
        except OSError as exc:
            self._fail(queue.pops.popleft(), OperationKind.POP, exc)
            return

        token = queue.pops.popleft()
        sga = self._track(ScatterGatherArray.from_bytes(data))
        self._complete(PopCompletion(token=token, qd=queue.qd, sga=sga))
        if data:
            return

        queue.eof = True
        while queue.pops:
            self._fail(
                queue.pops.popleft(),
                OperationKind.POP,
                ConnectionClosedError(f"peer closed descriptor {queue.qd}"),
            )

    def _progress_pushes(self, queue: _Queue) -> None:
        while queue.pushes:
            pending = queue.pushes[0]
            try:
                sent = queue.sock.send(pending.view[pending.sent :])
            except BlockingIOError:
                return
            except OSError as exc:
                queue.pushes.popleft()
                pending.sga.in_flight = False
                self._fail(pending.token, OperationKind.PUSH, exc)
                return

            pending.sent += sent
            if pending.sent < len(pending.view):
                return
            queue.pushes.popleft()
            pending.sga.in_flight = False
            self._complete(PushCompletion(token=pending.token, qd=queue.qd, sga=pending.sga))

    def _update_interest(self, queue: _Queue) -> None:
        events = 0
        if queue.accepts or (queue.pops and not queue.eof):
            events |= selectors.EVENT_READ
        if queue.pushes:
            events |= selectors.EVENT_WRITE
        if events == queue.events:
            return

        if queue.events == 0:
            self._selector.register(queue.sock, events, data=queue.qd)
        elif events == 0:
            self._selector.unregister(queue.sock)
        else:
            self._selector.modify(queue.sock, events, data=queue.qd)
        queue.events = events
