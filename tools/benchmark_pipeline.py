#!/usr/bin/env -S uv run
"""
Pipeline Benchmark Tool for deferq

Benchmarks the deferred-mutation path over the in-memory adapters:
admission (cache invalidation + enqueue), worker application with one or more
partitions, and upload-lock acquire/release.

Usage:
    uv run tools/benchmark_pipeline.py
    uv run tools/benchmark_pipeline.py --operations 5000 --partitions 4
    uv run tools/benchmark_pipeline.py --help
"""
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pydantic>=2.7",
#     "pydantic-settings>=2.2",
#     "redis>=5.0.1",
#     "pymongo>=4.10",
#     "structlog>=24.1",
#     "typer>=0.12",
#     "rich>=13.0",
# ]
# ///

from __future__ import annotations

import asyncio
import logging
import statistics
import sys
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Add parent directory to path to import deferq
sys.path.insert(0, str(Path(__file__).parent.parent))

from deferq import (
    Actor,
    ActorRole,
    InMemoryFastStore,
    InMemoryWorkStore,
    LockManager,
    MutationAdmission,
    MutationWorker,
    QueueLayout,
    ReadThroughCache,
    Work,
)

app = typer.Typer(
    help="Benchmark the deferq admission/worker pipeline",
    add_completion=False,
)

ACTOR = Actor(id="bench-admin", role=ActorRole.ADMIN)


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class BenchmarkResult:
    """Results from a single benchmark run."""

    operation: str
    total_ops: int
    total_time: float
    latencies: list[float]  # seconds

    @property
    def ops_per_sec(self) -> float:
        return self.total_ops / self.total_time if self.total_time > 0 else 0.0

    def percentile(self, q: float) -> float:
        if not self.latencies:
            return 0.0
        ordered = sorted(self.latencies)
        return ordered[min(int(len(ordered) * q), len(ordered) - 1)]

    @property
    def p50(self) -> float:
        return statistics.median(self.latencies) if self.latencies else 0.0

    @property
    def max_latency(self) -> float:
        return max(self.latencies) if self.latencies else 0.0


def format_latency_ms(seconds: float) -> str:
    ms = seconds * 1000
    if ms < 1:
        return f"{ms:.3f}ms"
    if ms < 10:
        return f"{ms:.2f}ms"
    return f"{ms:.1f}ms"


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def seed_works(durable: InMemoryWorkStore, n: int) -> list[str]:
    ids = [f"work-{i}" for i in range(n)]
    for entity_id in ids:
        durable.add(
            Work(
                id=entity_id,
                owner_id=ACTOR.id,
                prompt="benchmark",
                image_url="https://img.example/bench.png",
                category_id="bench",
            )
        )
    return ids


# ---------------------------------------------------------------------------
# Core Benchmark Functions
# ---------------------------------------------------------------------------


async def benchmark_admission(
    n: int, concurrency: int, partitions: int
) -> BenchmarkResult:
    """Submit N updates, `concurrency` at a time."""
    store = InMemoryFastStore()
    admission = MutationAdmission(
        store, ReadThroughCache(store), QueueLayout(partitions=partitions)
    )

    async def submit_one(i: int) -> float:
        start = perf_counter()
        await admission.submit_update(ACTOR, f"work-{i}", {"prompt": f"v{i}"})
        return perf_counter() - start

    latencies: list[float] = []
    start = perf_counter()
    for i in range(0, n, concurrency):
        batch = range(i, min(i + concurrency, n))
        latencies.extend(await asyncio.gather(*(submit_one(j) for j in batch)))
    return BenchmarkResult(
        operation=f"admit-c{concurrency}",
        total_ops=n,
        total_time=perf_counter() - start,
        latencies=latencies,
    )


async def benchmark_workers(n: int, partitions: int) -> BenchmarkResult:
    """Admit N deletes, then drain them with one worker per partition."""
    store = InMemoryFastStore()
    durable = InMemoryWorkStore()
    cache = ReadThroughCache(store)
    layout = QueueLayout(partitions=partitions)
    admission = MutationAdmission(store, cache, layout)

    for entity_id in seed_works(durable, n):
        await admission.submit_delete(ACTOR, entity_id)

    workers = [
        MutationWorker(store, durable, cache, layout, partition=p, claim_timeout=0.01)
        for p in range(partitions)
    ]
    start = perf_counter()
    outcomes = await asyncio.gather(*(w.drain() for w in workers))
    total_time = perf_counter() - start

    applied = sum(len(o) for o in outcomes)
    return BenchmarkResult(
        operation=f"apply-p{partitions}",
        total_ops=applied,
        total_time=total_time,
        latencies=[total_time / applied] * applied if applied else [],
    )


async def benchmark_lock(n: int) -> BenchmarkResult:
    """Acquire and release a per-actor upload lock N times."""
    locks = LockManager([InMemoryFastStore()])
    latencies: list[float] = []
    start = perf_counter()
    for i in range(n):
        op_start = perf_counter()
        async with locks.hold(f"upload-lock:actor-{i % 16}", ttl=30):
            pass
        latencies.append(perf_counter() - op_start)
    return BenchmarkResult(
        operation="lock-hold",
        total_ops=n,
        total_time=perf_counter() - start,
        latencies=latencies,
    )


async def run_benchmarks(
    operations: int, concurrency: int, partitions: int
) -> list[BenchmarkResult]:
    return [
        await benchmark_admission(operations, 1, partitions),
        await benchmark_admission(operations, concurrency, partitions),
        await benchmark_workers(operations, 1),
        await benchmark_workers(operations, partitions),
        await benchmark_lock(operations),
    ]


# ---------------------------------------------------------------------------
# Result Formatting
# ---------------------------------------------------------------------------


def format_results(results: list[BenchmarkResult]) -> None:
    console = Console()
    console.print()
    console.print(
        Panel("[bold cyan]deferq Pipeline Benchmark Results[/bold cyan]", expand=False)
    )

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Operation", style="cyan", width=15)
    table.add_column("Ops", justify="right")
    table.add_column("Ops/sec", justify="right", style="green")
    table.add_column("P50", justify="right")
    table.add_column("P95", justify="right")
    table.add_column("P99", justify="right")
    table.add_column("Max", justify="right")

    for result in results:
        table.add_row(
            result.operation,
            str(result.total_ops),
            f"{result.ops_per_sec:.1f}",
            format_latency_ms(result.p50),
            format_latency_ms(result.percentile(0.95)),
            format_latency_ms(result.percentile(0.99)),
            format_latency_ms(result.max_latency),
        )

    console.print(table)
    console.print()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@app.command()
def main(
    operations: int = typer.Option(
        1000, "--operations", "-n", min=1, help="Jobs per benchmark"
    ),
    concurrency: int = typer.Option(
        50, "--concurrency", "-c", min=1, help="Concurrent admissions"
    ),
    partitions: int = typer.Option(
        4, "--partitions", "-p", min=1, help="Queue partitions (one worker each)"
    ),
) -> None:
    """
    Benchmark admission, worker application and the upload lock.

    Per-job events are logged at INFO, so logging is raised to WARNING for
    the duration of the run.
    """
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.WARNING)
    )
    results = asyncio.run(run_benchmarks(operations, concurrency, partitions))
    format_results(results)


if __name__ == "__main__":
    app()
