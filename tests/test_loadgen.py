"""Tests for the concurrent-connection load generator."""

import asyncio
import threading
from pathlib import Path

from server import CompletionServer
from tools.loadgen import LoadResult, percentile, run_load

CONTENT = b"<p>load</p>"


def _start_server(resource_path: Path) -> tuple[CompletionServer, threading.Thread]:
    server = CompletionServer(port=0, resource_path=resource_path)
    server.setup()
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    return server, thread


def _stop_server(server: CompletionServer, thread: threading.Thread) -> None:
    server.stop()
    thread.join(timeout=2)


def test_percentile_interpolation() -> None:
    values = [10.0, 20.0, 30.0, 40.0]
    assert percentile(values, 0) == 10.0
    assert percentile(values, 100) == 40.0
    assert percentile(values, 50) == 25.0


def test_load_result_summary_fields() -> None:
    result = LoadResult(
        total_requests=10,
        errors=1,
        status_counts={"200": 9},
        latencies_ms=[10.0, 20.0, 30.0, 40.0],
        duration_secs=2.0,
        body_lengths={11},
    )
    summary = result.summary()
    assert summary["requests"] == 10
    assert summary["errors"] == 1
    assert summary["status_counts"] == {"200": 9}
    assert summary["rps"] == 5.0
    assert summary["p50_ms"] == 25.0
    assert summary["body_lengths"] == [11]


def test_run_load_reuses_each_connection(tmp_path: Path) -> None:
    resource = tmp_path / "hello.html"
    resource.write_bytes(CONTENT)
    server, thread = _start_server(resource)
    try:
        result = asyncio.run(
            run_load(
                host=server.host,
                port=server.port,
                concurrency=8,
                requests_per_connection=3,
                timeout_secs=2.0,
            )
        )
        snapshot = server.metrics.snapshot()
    finally:
        _stop_server(server, thread)

    assert result.errors == 0
    assert result.total_requests == 24
    assert result.status_counts == {"200": 24}
    assert result.body_lengths == {len(CONTENT)}
    assert snapshot["connections_accepted"] == 8
