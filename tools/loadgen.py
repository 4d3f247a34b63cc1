"""Async load generator that opens many concurrent connections against the server."""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from collections import Counter
from dataclasses import dataclass, field

REQUEST = b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n"


@dataclass(slots=True)
class LoadResult:
    total_requests: int
    errors: int
    status_counts: dict[str, int]
    latencies_ms: list[float] = field(default_factory=list)
    duration_secs: float = 0.0
    body_lengths: set[int] = field(default_factory=set)

    def summary(self) -> dict[str, float | int | dict[str, int] | list[int]]:
        rps = self.total_requests / self.duration_secs if self.duration_secs > 0 else 0.0
        error_rate = self.errors / self.total_requests if self.total_requests > 0 else 0.0
        return {
            "requests": self.total_requests,
            "errors": self.errors,
            "error_rate": round(error_rate, 6),
            "rps": round(rps, 2),
            "p50_ms": round(percentile(self.latencies_ms, 50), 2),
            "p95_ms": round(percentile(self.latencies_ms, 95), 2),
            "status_counts": self.status_counts,
            "body_lengths": sorted(self.body_lengths),
        }


async def run_load(
    host: str,
    port: int,
    *,
    concurrency: int,
    requests_per_connection: int,
    timeout_secs: float,
    payload: bytes = REQUEST,
) -> LoadResult:
    """Open ``concurrency`` connections at once and send requests one at a time on each.

    The server never closes a connection after answering, so every worker
    reuses its connection for all of its requests and closes it itself.
    """
    status_counts: Counter[str] = Counter()
    latencies_ms: list[float] = []
    body_lengths: set[int] = set()
    total_requests = 0
    errors = 0

    def record(status: int, body_length: int, latency_ms: float, is_error: bool) -> None:
        nonlocal total_requests, errors
        total_requests += 1
        latencies_ms.append(latency_ms)
        if is_error:
            errors += 1
            return
        status_counts[str(status)] += 1
        body_lengths.add(body_length)

    async def worker() -> None:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=timeout_secs,
            )
        except (OSError, asyncio.TimeoutError):
            for _ in range(requests_per_connection):
                record(0, 0, 0.0, True)
            return

        try:
            for _ in range(requests_per_connection):
                started = time.perf_counter()
                try:
                    writer.write(payload)
                    await writer.drain()
                    status, body = await read_response(reader, timeout=timeout_secs)
                except (OSError, ValueError, asyncio.TimeoutError, asyncio.IncompleteReadError):
                    record(0, 0, (time.perf_counter() - started) * 1000, True)
                    return
                record(status, len(body), (time.perf_counter() - started) * 1000, False)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    started = time.perf_counter()
    await asyncio.gather(*(worker() for _ in range(concurrency)))
    duration = time.perf_counter() - started

    return LoadResult(
        total_requests=total_requests,
        errors=errors,
        status_counts=dict(status_counts),
        latencies_ms=latencies_ms,
        duration_secs=duration,
        body_lengths=body_lengths,
    )


async def read_response(reader: asyncio.StreamReader, timeout: float) -> tuple[int, bytes]:
    status_line = await asyncio.wait_for(reader.readline(), timeout=timeout)
    if not status_line.startswith(b"HTTP/"):
        raise ValueError("Invalid status line")
    parts = status_line.decode("iso-8859-1").strip().split(" ")
    if len(parts) < 2:
        raise ValueError("Malformed status line")
    status = int(parts[1])

    headers: dict[str, str] = {}
    while True:
        line = await asyncio.wait_for(reader.readline(), timeout=timeout)
        if line in {b"\r\n", b"\n", b""}:
            break
        if b":" not in line:
            raise ValueError("Malformed header line")
        key, value = line.decode("iso-8859-1").strip().split(":", 1)
        headers[key.strip().lower()] = value.strip()

    if "content-length" not in headers:
        raise ValueError("Response has no Content-Length")
    content_length = int(headers["content-length"])
    body = await asyncio.wait_for(reader.readexactly(content_length), timeout=timeout)
    return status, body


def percentile(values: list[float], pct: int) -> float:
    if not values:
        return 0.0
    if pct <= 0:
        return min(values)
    if pct >= 100:
        return max(values)

    ordered = sorted(values)
    rank = (len(ordered) - 1) * (pct / 100)
    lower = int(rank)
    upper = min(lower + 1, len(ordered) - 1)
    weight = rank - lower
    return ordered[lower] * (1 - weight) + ordered[upper] * weight


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Open concurrent connections against the server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=7878)
    parser.add_argument("--concurrency", type=int, default=100)
    parser.add_argument("--requests", type=int, default=10, help="requests per connection")
    parser.add_argument("--timeout", type=float, default=2.0)
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    result = asyncio.run(
        run_load(
            host=args.host,
            port=args.port,
            concurrency=args.concurrency,
            requests_per_connection=args.requests,
            timeout_secs=args.timeout,
        )
    )
    print(json.dumps(result.summary(), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
