"""
deferq command line.

    deferq worker --partition 0       run a worker (and reaper) until SIGINT/SIGTERM
    deferq reap --partition 0         requeue claims abandoned by dead workers
    deferq dead-letters --limit 20    inspect the dead-letter list
    deferq requeue-dead               push dead-lettered jobs back, bytes unchanged

Connection settings come from DEFERQ_* environment variables (see config.py).
"""

from __future__ import annotations

import asyncio
import signal

import typer
from rich.console import Console
from rich.table import Table

from deferq.adapters.durable.mongo import MongoWorkStore
from deferq.adapters.fast_store.redis import RedisFastStore
from deferq.config import Settings, get_settings
from deferq.core import codec
from deferq.core.cache import ReadThroughCache
from deferq.core.keys import QueueLayout
from deferq.core.reaper import Reaper
from deferq.core.worker import MutationWorker
from deferq.domain.errors import MalformedJobError
from deferq.logconfig import configure_logging

app = typer.Typer(help="Deferred mutation queue tools", add_completion=False)
console = Console()


def _layout(settings: Settings) -> QueueLayout:
    return QueueLayout(prefix=settings.key_prefix, partitions=settings.partitions)


def _fast_store(settings: Settings) -> RedisFastStore:
    # BLMOVE blocks for claim_timeout; the socket must outlive it.
    return RedisFastStore.from_url(
        settings.redis_url, socket_timeout=settings.claim_timeout + 5
    )


# ---------------------------------------------------------------------------
# worker
# ---------------------------------------------------------------------------


async def _run_worker(settings: Settings, partition: int, reap: bool) -> None:
    store = _fast_store(settings)
    durable = MongoWorkStore.from_url(settings.mongodb_url, settings.mongodb_database)
    layout = _layout(settings)
    worker = MutationWorker(
        store=store,
        durable=durable,
        cache=ReadThroughCache(store, ttl=settings.cache_ttl),
        layout=layout,
        partition=partition,
        max_attempts=settings.max_attempts,
        retry_backoff=settings.retry_backoff,
        claim_timeout=settings.claim_timeout,
        heartbeat_ttl=settings.heartbeat_ttl,
        heartbeat_interval=settings.heartbeat_interval,
        marker_ttl=settings.applied_marker_ttl,
    )
    reaper = Reaper(store, layout, partition=partition)

    def _shutdown() -> None:
        worker.stop()
        reaper.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown)

    tasks = [worker.run()]
    if reap:
        tasks.append(reaper.run(settings.reaper_interval))
    try:
        await asyncio.gather(*tasks)
    finally:
        await durable.close()
        await store.close()


@app.command()
def worker(
    partition: int = typer.Option(0, help="Source queue partition to drain"),
    reap: bool = typer.Option(True, help="Also run the reaper for this partition"),
) -> None:
    """Apply queued mutations to the durable store."""
    settings = get_settings()
    configure_logging(settings.log_json, settings.log_level)
    asyncio.run(_run_worker(settings, partition, reap))


# ---------------------------------------------------------------------------
# reap
# ---------------------------------------------------------------------------


async def _reap(settings: Settings, partition: int) -> int:
    store = _fast_store(settings)
    try:
        reaper = Reaper(store, _layout(settings), partition=partition)
        await reaper.sweep()
        await asyncio.sleep(settings.heartbeat_interval)
        return await reaper.sweep()
    finally:
        await store.close()


@app.command()
def reap(
    partition: int = typer.Option(0, help="Partition whose processing list to sweep"),
) -> None:
    """Requeue claimed jobs whose worker stopped heartbeating."""
    settings = get_settings()
    configure_logging(settings.log_json, settings.log_level)
    requeued = asyncio.run(_reap(settings, partition))
    console.print(f"Requeued [bold]{requeued}[/bold] abandoned job(s)")


# ---------------------------------------------------------------------------
# dead letters
# ---------------------------------------------------------------------------


async def _dead_letters(settings: Settings, limit: int) -> list[str]:
    store = _fast_store(settings)
    try:
        return await store.range(_layout(settings).dead, 0, limit - 1)
    finally:
        await store.close()


@app.command("dead-letters")
def dead_letters(
    limit: int = typer.Option(20, min=1, help="Maximum entries to show"),
) -> None:
    """Show the most recent dead-lettered jobs."""
    settings = get_settings()
    entries = asyncio.run(_dead_letters(settings, limit))

    table = Table(title=f"Dead letters ({len(entries)} shown)")
    table.add_column("Failed at", style="dim")
    table.add_column("Reason", style="red")
    table.add_column("Job")
    table.add_column("Entity")
    table.add_column("Attempts", justify="right")
    table.add_column("Error")
    for entry in entries:
        letter = codec.decode_dead_letter(entry)
        try:
            job = codec.decode(letter.raw)
            job_id, entity_id = job.id, job.entity_id
        except MalformedJobError:
            job_id, entity_id = "-", "-"
        table.add_row(
            letter.failed_at.isoformat(timespec="seconds"),
            letter.reason.value,
            job_id,
            entity_id,
            str(letter.attempts),
            letter.error,
        )
    console.print(table)


async def _requeue_dead(settings: Settings) -> tuple[int, int]:
    store = _fast_store(settings)
    layout = _layout(settings)
    requeued = skipped = 0
    try:
        for entry in await store.range(layout.dead):
            letter = codec.decode_dead_letter(entry)
            try:
                job = codec.decode(letter.raw)
            except MalformedJobError:
                skipped += 1
                continue
            source = layout.source(layout.partition_for(job.entity_id))
            if await store.move(layout.dead, source, entry, replacement=letter.raw):
                requeued += 1
    finally:
        await store.close()
    return requeued, skipped


@app.command("requeue-dead")
def requeue_dead() -> None:
    """Move dead-lettered jobs back onto their source queue (malformed ones stay)."""
    settings = get_settings()
    configure_logging(settings.log_json, settings.log_level)
    requeued, skipped = asyncio.run(_requeue_dead(settings))
    console.print(
        f"Requeued [bold]{requeued}[/bold] job(s); "
        f"left [bold]{skipped}[/bold] malformed entr(y/ies) in place"
    )


if __name__ == "__main__":
    app()
