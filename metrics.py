"""Thread-safe in-memory counters for the completion server."""

from __future__ import annotations

import threading
from collections import Counter


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections_accepted = 0
        self._connections_closed = 0
        self._active_connections = 0
        self._total_requests = 0
        self._total_responses = 0
        self._bytes_received_total = 0
        self._bytes_sent_total = 0
        self._accepts_outstanding = 0
        self._idle_connections_reclaimed = 0
        self._failures_by_kind: Counter[str] = Counter()
        self._failures_by_type: Counter[str] = Counter()
        self._processor_errors_by_type: Counter[str] = Counter()

    def connection_opened(self) -> None:
        with self._lock:
            self._connections_accepted += 1
            self._active_connections += 1

    def connection_closed(self) -> None:
        with self._lock:
            self._connections_closed += 1
            self._active_connections = max(0, self._active_connections - 1)

    def record_request(self, *, bytes_in: int) -> None:
        with self._lock:
            self._total_requests += 1
            self._bytes_received_total += bytes_in

    def record_response(self, *, bytes_out: int) -> None:
        with self._lock:
            self._total_responses += 1
            self._bytes_sent_total += bytes_out

    def record_failure(self, kind: str, error_type: str) -> None:
        with self._lock:
            self._failures_by_kind[kind] += 1
            self._failures_by_type[error_type] += 1

    def record_processor_error(self, error_type: str) -> None:
        with self._lock:
            self._processor_errors_by_type[error_type] += 1

    def record_idle_reclaim(self) -> None:
        with self._lock:
            self._idle_connections_reclaimed += 1

    def set_accepts_outstanding(self, count: int) -> None:
        with self._lock:
            self._accepts_outstanding = max(0, count)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "connections_accepted": self._connections_accepted,
                "connections_closed": self._connections_closed,
                "active_connections": self._active_connections,
                "total_requests": self._total_requests,
                "total_responses": self._total_responses,
                "bytes_received_total": self._bytes_received_total,
                "bytes_sent_total": self._bytes_sent_total,
                "accepts_outstanding": self._accepts_outstanding,
                "idle_connections_reclaimed": self._idle_connections_reclaimed,
                "failures_by_kind": dict(self._failures_by_kind),
                "failures_by_type": dict(self._failures_by_type),
                "processor_errors_by_type": dict(self._processor_errors_by_type),
            }
