"""Per-connection state and the receive-to-send state machine."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field

from buffers import ScatterGatherArray
from config import RECEIVE_HISTORY_LIMIT
from handlers.static_file import ProcessorError, RequestProcessor
from io_engine import Address, IOEngine, QDesc, QToken
from metrics import MetricsRegistry
from response import error_response

logger = logging.getLogger(__name__)


class UnknownSendError(LookupError):
    """Raised when a send completion has no buffer recorded on its connection."""


@dataclass(slots=True)
class Connection:
    qd: QDesc
    address: Address
    receive_queue: deque[ScatterGatherArray] = field(default_factory=deque)
    pending_sends: dict[QToken, ScatterGatherArray] = field(default_factory=dict)
    requests_served: int = 0
    peer_closed: bool = False
    bytes_in: int = 0
    last_activity: float = field(default_factory=time.monotonic)


class ConnectionStateMachine:
    """Decide what to send for each completed receive on a connection.

    Owns every buffer it hands to the engine until the matching send
    completes, and frees each buffer exactly once.
    """

    def __init__(
        self,
        engine: IOEngine,
        processor: RequestProcessor,
        *,
        history_limit: int = RECEIVE_HISTORY_LIMIT,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        if history_limit < 0:
            raise ValueError("history_limit cannot be negative")
        self._engine = engine
        self._processor = processor
        self._history_limit = history_limit
        self._metrics = metrics or MetricsRegistry()

    def on_receive(self, connection: Connection, sga: ScatterGatherArray) -> QToken | None:
        payload = sga.single_segment()
        connection.last_activity = time.monotonic()
        if len(payload) == 0:
            logger.debug("empty receive on descriptor %s", connection.qd)
            self._engine.sgafree(sga)
            return None

        request = payload.tobytes()
        payload.release()
        logger.debug("Received: %s", request.decode("utf-8", errors="replace"))
        self._remember(connection, sga)
        connection.requests_served += 1
        connection.bytes_in += len(request)
        self._metrics.record_request(bytes_in=len(request))

        try:
            response = self._processor(request)
        except ProcessorError as exc:
            logger.error("request processor failed on descriptor %s: %s", connection.qd, exc)
            self._metrics.record_processor_error(exc.__class__.__name__)
            response = error_response(500).to_bytes()

        send_sga = self._engine.sgaalloc(len(response))
        send_sga.write(response)
        token = self._engine.push(connection.qd, send_sga)
        connection.pending_sends[token] = send_sga
        return token

    def on_send_complete(self, connection: Connection, token: QToken) -> int:
        try:
            sga = connection.pending_sends.pop(token)
        except KeyError as exc:
            raise UnknownSendError(
                f"send {token} is not pending on descriptor {connection.qd}"
            ) from exc
        connection.last_activity = time.monotonic()
        bytes_sent = sga.nbytes
        self._engine.sgafree(sga)
        self._metrics.record_response(bytes_out=bytes_sent)
        return bytes_sent

    def release(self, connection: Connection) -> None:
        """Free every buffer the connection still owns."""
        while connection.receive_queue:
            self._engine.sgafree(connection.receive_queue.popleft())
        for token in list(connection.pending_sends):
            self._engine.sgafree(connection.pending_sends.pop(token))

    def _remember(self, connection: Connection, sga: ScatterGatherArray) -> None:
        connection.receive_queue.append(sga)
        while len(connection.receive_queue) > self._history_limit:
            self._engine.sgafree(connection.receive_queue.popleft())
