"""Worker claim → process → release loop.

Architecture
------------
Every worker process runs the same loop against the same table; the lock
columns are the only coordination.  One cycle:

  claim(limit)
    ↓   sweep expired locks, select candidates, conditional lock update
  split into sub-batches of ``batch_size``
    ↓   run_batch(): at most ``concurrency`` rows in flight, settle-all
  process_one(item)
    success → output written and lock cleared in one UPDATE
    failure → lock cleared, output left null (row is claimable again)

The cycle returns how many rows it claimed; ``PollScheduler`` sleeps only
when that is zero.

Row lifecycle:
  unlocked ──claim──▶ locked ──complete──▶ output set, unlocked
                        │
                        └──release──▶ unlocked, output null (retried later)

Failed rows are retried forever unless the pipeline declares an attempts
column and ``max_row_attempts`` is set on the store.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Sequence

from backfill.db.store import WorkItem, WorkQueueStore
from backfill.transform.decode import MalformedOutputError
from backfill.transform.retry import is_retryable
from backfill.transform.transformer import Transformer
from backfill.utils.logger import ctx_item_id
from backfill.utils.metrics import (
    pipeline_summary,
    record_item_result,
    record_loop_error,
    record_rows_claimed,
    record_stale_locks_released,
)
from backfill.worker.runner import BatchResult, chunked, settle_bounded
from backfill.worker.scheduler import PollScheduler

logger = logging.getLogger("backfill.worker.loop")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_worker_id(pipeline: str) -> str:
    return f"{pipeline}-{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


def _error_kind(exc: BaseException) -> str:
    if isinstance(exc, MalformedOutputError):
        return "malformed"
    if is_retryable(exc):
        return "transient"
    return "error"


class WorkQueueWorker:
    """Drains one pipeline's backlog with row locks and bounded concurrency.

    Args:
        store:         Datastore for the pipeline table.
        transformer:   Produces the output value for a row (or group of rows).
        worker_id:     Lock-owner tag; used for observability only.
        claim_limit:   Rows claimed per cycle.
        batch_size:    Claimed rows are processed in sub-batches of this size.
        concurrency:   Max rows (or row groups) in flight per sub-batch.
        lock_ttl:      Seconds after which any worker may clear a lock.
        poll_interval: Idle sleep when nothing could be claimed.
        error_sleep:   Sleep after a loop-level failure.
        clock:         Returns the current UTC time (lock timestamps, TTL cutoff).
        sleep:         Awaitable sleep used by the scheduler.
    """

    def __init__(
        self,
        store: WorkQueueStore,
        transformer: Transformer,
        worker_id: str,
        *,
        claim_limit: int = 100,
        batch_size: int = 10,
        concurrency: int = 4,
        lock_ttl: float = 900.0,
        poll_interval: float = 1.0,
        error_sleep: float = 2.0,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.transformer = transformer
        self.worker_id = worker_id
        self.claim_limit = claim_limit
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.lock_ttl = lock_ttl
        self.poll_interval = poll_interval
        self.error_sleep = error_sleep
        self._clock = clock
        self._sleep = sleep

    @property
    def pipeline_name(self) -> str:
        return self.store.pipeline.name

    # ── Claim ──────────────────────────────────────────────────

    async def claim(self, batch_size: int | None = None) -> list[WorkItem]:
        """Lock up to *batch_size* eligible rows for this worker and return them."""
        limit = self.claim_limit if batch_size is None else batch_size
        if limit <= 0:
            raise ValueError("batch size must be a positive integer")

        now = self._clock()
        released = await self.store.release_stale_locks(now - timedelta(seconds=self.lock_ttl))
        if released:
            record_stale_locks_released(self.pipeline_name, released)
            logger.info("Released %d stale lock(s) older than %.0fs", released, self.lock_ttl)

        candidates = await self.store.select_candidates(limit)
        if not candidates:
            return []

        items = await self.store.acquire(candidates, self.worker_id, now)
        if len(items) < len(candidates):
            logger.debug(
                "Lost %d of %d candidate row(s) to concurrent workers",
                len(candidates) - len(items), len(candidates),
            )
        if items:
            record_rows_claimed(self.pipeline_name, len(items))
        return items

    # ── Process ────────────────────────────────────────────────

    async def _fail(
        self,
        items: Sequence[WorkItem],
        exc: BaseException,
        started: float,
        kind: str | None = None,
    ) -> None:
        kind = kind or _error_kind(exc)
        ids = [item.id for item in items]
        logger.warning("Row(s) %s failed (%s): %s", ids, kind, exc)
        elapsed = time.monotonic() - started
        for _ in items:
            record_item_result(self.pipeline_name, "failed", elapsed, error_kind=kind)
        try:
            await self.store.release(
                ids, error=f"{type(exc).__name__}: {exc}", owner=self.worker_id
            )
        except Exception:
            logger.exception("Could not release lock on row(s) %s; TTL sweep will recover them", ids)

    async def _persist(self, item: WorkItem, output: Any, started: float) -> bool:
        try:
            await self.store.complete(item.id, output)
        except Exception as exc:
            logger.error("Datastore write failed for row %s: %s", item.id, exc)
            await self._fail([item], exc, started, kind="datastore")
            return False
        record_item_result(self.pipeline_name, "succeeded", time.monotonic() - started)
        return True

    async def process_one(self, item: WorkItem) -> bool:
        """Transform one claimed row and persist it; release the lock on any failure."""
        token = ctx_item_id.set(item.id)
        started = time.monotonic()
        try:
            try:
                output = await self.transformer.transform(item)
            except Exception as exc:
                await self._fail([item], exc, started)
                return False
            return await self._persist(item, output, started)
        finally:
            ctx_item_id.reset(token)

    async def process_group(self, items: Sequence[WorkItem]) -> int:
        """One LLM call for several rows; a transform failure releases the whole group."""
        token = ctx_item_id.set(",".join(str(item.id) for item in items))
        started = time.monotonic()
        try:
            try:
                outputs = await self.transformer.transform_group(items)
            except Exception as exc:
                await self._fail(items, exc, started)
                return 0
            succeeded = 0
            for item, output in zip(items, outputs):
                if await self._persist(item, output, started):
                    succeeded += 1
            return succeeded
        finally:
            ctx_item_id.reset(token)

    async def run_batch(self, items: Sequence[WorkItem], concurrency: int | None = None) -> BatchResult:
        """Process *items* with bounded concurrency; one failure never aborts the rest."""
        limit = concurrency or self.concurrency
        rows_per_call = self.store.pipeline.rows_per_call

        if rows_per_call > 1:
            groups = list(chunked(items, rows_per_call))
            outcomes = await settle_bounded(groups, self.process_group, limit)
            succeeded = 0
            for group, outcome in zip(groups, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error("Row group %s raised: %s", [i.id for i in group], outcome)
                    continue
                succeeded += outcome
            return BatchResult(succeeded=succeeded, failed=len(items) - succeeded)

        outcomes = await settle_bounded(items, self.process_one, limit)
        result = BatchResult()
        for item, outcome in zip(items, outcomes):
            if outcome is True:
                result.succeeded += 1
            else:
                if isinstance(outcome, BaseException):
                    logger.error("Row %s raised: %s", item.id, outcome)
                result.failed += 1
        return result

    # ── Loop ───────────────────────────────────────────────────

    async def run_cycle(self) -> int:
        """Claim once and process everything claimed; return the number of rows claimed."""
        items = await self.claim(self.claim_limit)
        if not items:
            return 0

        logger.info("Claimed %d row(s)", len(items))
        total = BatchResult()
        done = 0
        try:
            for batch in chunked(items, self.batch_size):
                total += await self.run_batch(batch, self.concurrency)
                done += len(batch)
        except asyncio.CancelledError:
            # shutting down mid-cycle: hand unfinished rows back right away
            leftover = [item.id for item in items[done:]]
            if leftover:
                logger.info("Releasing %d unfinished row(s) on shutdown", len(leftover))
                await self.store.release(leftover, count_attempt=False, owner=self.worker_id)
            raise

        logger.info("Cycle done: ok=%d fail=%d of %d", total.succeeded, total.failed, len(items))
        return len(items)

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Poll and process until *stop_event* is set or the task is cancelled."""
        logger.info(
            "Worker %s started (pipeline=%s, claim=%d, batch=%d, concurrency=%d, ttl=%.0fs)",
            self.worker_id, self.pipeline_name, self.claim_limit,
            self.batch_size, self.concurrency, self.lock_ttl,
        )
        scheduler = PollScheduler(
            idle_interval=self.poll_interval,
            error_interval=self.error_sleep,
            sleep=self._sleep,
            on_error=lambda: record_loop_error(self.pipeline_name),
        )
        try:
            await scheduler.run(self.run_cycle, stop_event)
        finally:
            logger.info("Worker %s stopping; %s", self.worker_id, pipeline_summary(self.pipeline_name))
