"""Completion-driven HTTP responder: listener setup and the event loop."""

from __future__ import annotations

import argparse
import json
import logging
import threading
import time
from pathlib import Path
from typing import assert_never

from config import (
    ACCEPT_RETRY_DELAY_SECS,
    BACKLOG,
    FAILURE_POLICY,
    HOST,
    IDLE_SWEEP_INTERVAL_SECS,
    IDLE_TIMEOUT_SECS,
    LOG_FORMAT,
    PORT,
    RECEIVE_HISTORY_LIMIT,
    RESOURCE_PATH,
)
from connection import Connection, ConnectionStateMachine
from handlers.static_file import RequestProcessor, StaticFileResponder
from io_engine import (
    AcceptCompletion,
    Completion,
    ConnectionClosedError,
    FailedCompletion,
    IOEngine,
    OperationKind,
    PopCompletion,
    PushCompletion,
    QDesc,
    QToken,
)
from metrics import MetricsRegistry
from registry import ConnectionRegistry

logger = logging.getLogger(__name__)

FAILURE_POLICIES = ("isolate", "abort")


class ServerSetupError(RuntimeError):
    """Raised when the listening endpoint cannot be created."""


class ConnectionFailedError(RuntimeError):
    """Raised out of ``run`` by the abort policy when an operation fails."""


class CompletionServer:
    def __init__(
        self,
        host: str = HOST,
        port: int = PORT,
        resource_path: str | Path = RESOURCE_PATH,
        *,
        engine: IOEngine | None = None,
        processor: RequestProcessor | None = None,
        backlog: int = BACKLOG,
        failure_policy: str = FAILURE_POLICY,
        idle_timeout_secs: float | None = IDLE_TIMEOUT_SECS,
        idle_sweep_interval_secs: float = IDLE_SWEEP_INTERVAL_SECS,
        history_limit: int = RECEIVE_HISTORY_LIMIT,
        log_format: str = LOG_FORMAT,
        accept_retry_delay_secs: float = ACCEPT_RETRY_DELAY_SECS,
    ) -> None:
        if failure_policy not in FAILURE_POLICIES:
            raise ValueError(f"Unsupported failure policy: {failure_policy}")
        if idle_timeout_secs is not None and idle_timeout_secs <= 0:
            raise ValueError("idle_timeout_secs must be positive")
        if idle_sweep_interval_secs <= 0:
            raise ValueError("idle_sweep_interval_secs must be positive")
        if accept_retry_delay_secs < 0:
            raise ValueError("accept_retry_delay_secs cannot be negative")

        self.host = host
        self.port = port
        self.resource_path = Path(resource_path)
        self.backlog = backlog
        self.failure_policy = failure_policy
        self.idle_timeout_secs = idle_timeout_secs
        self.idle_sweep_interval_secs = idle_sweep_interval_secs
        self.log_format = log_format
        self.accept_retry_delay_secs = accept_retry_delay_secs

        self._owns_engine = engine is None
        self.engine = engine or IOEngine()
        self._default_processor = processor is None
        self.processor = processor or StaticFileResponder(self.resource_path)
        self.metrics = MetricsRegistry()
        self.registry = ConnectionRegistry()
        self.state_machine = ConnectionStateMachine(
            self.engine,
            self.processor,
            history_limit=history_limit,
            metrics=self.metrics,
        )

        self._listening_qd: QDesc | None = None
        self._accept_token: QToken | None = None
        self._waiters: list[QToken] = []
        self._stop_requested = threading.Event()
        self._last_idle_sweep = time.monotonic()
        self._accept_retry_at: float | None = None
        self._accept_failure_streak = 0

    @property
    def outstanding_operations(self) -> int:
        return len(self._waiters)

    def setup(self) -> None:
        """Create, bind and listen on the endpoint, then post the first accept."""
        qd: QDesc | None = None
        try:
            qd = self.engine.socket()
            self.engine.bind(qd, (self.host, self.port))
            self.engine.listen(qd, self.backlog)
        except OSError as exc:
            if qd is not None:
                self.engine.close(qd)
            raise ServerSetupError(f"cannot listen on {self.host}:{self.port}: {exc}") from exc

        self._listening_qd = qd
        self.host, self.port = self.engine.local_address(qd)
        self._waiters = []
        self._arm_accept()
        self._log_event("listening", address=f"{self.host}:{self.port}", backlog=self.backlog)
        if self._default_processor and not self.resource_path.is_file():
            self._log_event(
                "resource_missing",
                level=logging.WARNING,
                path=str(self.resource_path),
            )

    def start(self) -> None:
        self.setup()
        self.run()

    def run(self) -> None:
        """Serve completions until ``stop`` is called.

        Per-connection failures are isolated or escalated according to
        ``failure_policy``; invariant violations propagate.
        """
        if self._listening_qd is None:
            raise ServerSetupError("setup() must be called before run()")

        try:
            while not self._stop_requested.is_set():
                result = self.engine.wait_any(self._waiters, timeout=self._wait_timeout())
                if result is not None:
                    index, completion = result
                    self._waiters.pop(index)
                    self._dispatch(completion)
                self._maybe_rearm_accept()
                self._maybe_sweep_idle()
        finally:
            self._teardown()

    def stop(self) -> None:
        self._stop_requested.set()
        self.engine.wakeup()

    def _dispatch(self, completion: Completion) -> None:
        match completion:
            case AcceptCompletion():
                self._on_accept(completion)
            case PopCompletion():
                self._on_pop(completion)
            case PushCompletion():
                self._on_push(completion)
            case FailedCompletion():
                self._on_failure(completion)
            case _:
                assert_never(completion)

    def _on_accept(self, completion: AcceptCompletion) -> None:
        self._accept_token = None
        self._accept_failure_streak = 0
        connection = Connection(qd=completion.new_qd, address=completion.address)
        self.registry.insert(completion.new_qd, connection)
        self.metrics.connection_opened()
        self._log_event(
            "connection_established",
            qd=completion.new_qd,
            client=f"{completion.address[0]}:{completion.address[1]}",
        )

        self._waiters.append(self.engine.pop(completion.new_qd))
        self._arm_accept()

    def _on_pop(self, completion: PopCompletion) -> None:
        connection = self.registry.get(completion.qd)
        send_token = self.state_machine.on_receive(connection, completion.sga)
        if send_token is not None:
            self._waiters.append(send_token)
        self._waiters.append(self.engine.pop(completion.qd))

    def _on_push(self, completion: PushCompletion) -> None:
        connection = self.registry.get(completion.qd)
        self.state_machine.on_send_complete(connection, completion.token)
        if connection.peer_closed and not connection.pending_sends:
            self._close_connection(completion.qd, reason="peer_closed")

    def _on_failure(self, completion: FailedCompletion) -> None:
        error = completion.error
        if isinstance(error, ConnectionClosedError):
            connection = self.registry.get(completion.qd)
            if connection.pending_sends:
                # Finish writing queued responses before closing.
                connection.peer_closed = True
                return
            self._close_connection(completion.qd, reason="peer_closed")
            return

        self.metrics.record_failure(completion.kind.value, error.__class__.__name__)
        if self.failure_policy == "abort":
            raise ConnectionFailedError(
                f"{completion.kind.value} failed on descriptor {completion.qd}: {error}"
            ) from error

        if completion.kind is OperationKind.ACCEPT:
            self._accept_token = None
            self._accept_failure_streak += 1
            if self._accept_failure_streak == 1:
                self._log_event("accept_failed", level=logging.WARNING, error=repr(error))
            else:
                logger.debug("accept failed again (%s in a row): %r", self._accept_failure_streak, error)
            self._accept_retry_at = time.monotonic() + self.accept_retry_delay_secs
            self.metrics.set_accepts_outstanding(0)
            return

        self._log_event(
            "operation_failed",
            level=logging.WARNING,
            qd=completion.qd,
            kind=completion.kind.value,
            error=repr(error),
        )
        self._close_connection(completion.qd, reason=f"{completion.kind.value}_failed")

    def _arm_accept(self) -> None:
        if self._accept_token is not None:
            raise RuntimeError("an accept is already outstanding")
        if self._listening_qd is None:
            raise ServerSetupError("setup() must be called before accepting")
        self._accept_token = self.engine.accept(self._listening_qd)
        self._waiters.append(self._accept_token)
        self.metrics.set_accepts_outstanding(1)

    def _maybe_rearm_accept(self) -> None:
        if self._accept_retry_at is None:
            return
        if time.monotonic() < self._accept_retry_at:
            return
        self._accept_retry_at = None
        self._arm_accept()

    def _close_connection(self, qd: QDesc, *, reason: str) -> None:
        connection = self.registry.remove(qd)
        abandoned = set(self.engine.close(qd))
        if abandoned:
            self._waiters = [token for token in self._waiters if token not in abandoned]
        self.state_machine.release(connection)
        self.metrics.connection_closed()
        self._log_event(
            "connection_closed",
            qd=qd,
            reason=reason,
            requests=connection.requests_served,
        )

    def _wait_timeout(self) -> float | None:
        timeout: float | None = None
        if self.idle_timeout_secs is not None:
            timeout = self.idle_sweep_interval_secs
        if self._accept_retry_at is not None:
            retry_in = max(0.0, self._accept_retry_at - time.monotonic())
            timeout = retry_in if timeout is None else min(timeout, retry_in)
        return timeout

    def _maybe_sweep_idle(self) -> None:
        if self.idle_timeout_secs is None:
            return
        now = time.monotonic()
        if now - self._last_idle_sweep < self.idle_sweep_interval_secs:
            return
        self._last_idle_sweep = now

        for connection in self.registry.values():
            if connection.pending_sends:
                continue
            if now - connection.last_activity <= self.idle_timeout_secs:
                continue
            self.metrics.record_idle_reclaim()
            self._close_connection(connection.qd, reason="idle_timeout")

    def _teardown(self) -> None:
        for qd in self.registry:
            self._close_connection(qd, reason="shutdown")
        if self._listening_qd is not None and self.engine.is_open(self._listening_qd):
            self.engine.close(self._listening_qd)
        self._listening_qd = None
        self._accept_token = None
        self._accept_retry_at = None
        self._waiters.clear()
        self.metrics.set_accepts_outstanding(0)
        if self._owns_engine:
            self.engine.shutdown()

    def _log_event(self, event: str, *, level: int = logging.INFO, **fields: object) -> None:
        payload = {"event": event, **fields}
        if self.log_format == "json":
            logger.log(level, json.dumps(payload, sort_keys=True, default=str))
            return
        logger.log(level, " ".join(f"{key}={value}" for key, value in payload.items()))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve one static file over a completion-driven loop")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--resource", default=RESOURCE_PATH)
    parser.add_argument("--backlog", type=int, default=BACKLOG)
    parser.add_argument("--failure-policy", choices=FAILURE_POLICIES, default=FAILURE_POLICY)
    parser.add_argument("--idle-timeout", type=float, default=IDLE_TIMEOUT_SECS)
    parser.add_argument("--log-format", choices=["plain", "json"], default=LOG_FORMAT)
    parser.add_argument("--debug", action="store_true", help="log received payloads")
    return parser.parse_args()


if __name__ == "__main__":
    args = _parse_args()
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)
    server = CompletionServer(
        host=args.host,
        port=args.port,
        resource_path=args.resource,
        backlog=args.backlog,
        failure_policy=args.failure_policy,
        idle_timeout_secs=args.idle_timeout,
        log_format=args.log_format,
    )
    try:
        server.setup()
    except ServerSetupError as exc:
        logger.critical("%s", exc)
        raise SystemExit(1) from exc
    try:
        server.run()
    except KeyboardInterrupt:
        server.stop()
