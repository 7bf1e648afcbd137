"""Tests for the poll cadence: idle sleeps, immediate drain, error backoff."""

from __future__ import annotations

import asyncio
import json

import pytest

from backfill.transform.transformer import Transformer
from backfill.utils.metrics import metrics
from backfill.worker.loop import WorkQueueWorker
from backfill.worker.scheduler import PollScheduler, SchedulerState

from conftest import FakeLLM, fetch_rows, seed_rows


class FakeSleeper:
    """Advances a virtual clock; sets *stop* once *window* seconds have passed."""

    def __init__(self, stop: asyncio.Event, window: float):
        self.stop = stop
        self.window = window
        self.elapsed = 0.0
        self.sleeps: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.elapsed += seconds
        if self.elapsed >= self.window:
            self.stop.set()


class TestPollScheduler:

    @pytest.mark.asyncio
    async def test_idle_cadence(self):
        """Empty backlog over a 10s window at 1s interval polls 10 times."""
        stop = asyncio.Event()
        sleeper = FakeSleeper(stop, window=10.0)
        claims = 0

        async def cycle():
            nonlocal claims
            claims += 1
            return 0

        scheduler = PollScheduler(idle_interval=1.0, error_interval=5.0, sleep=sleeper)
        await scheduler.run(cycle, stop)

        assert claims == 10
        assert sleeper.sleeps == [1.0] * 10
        assert scheduler.state is SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_draining_does_not_sleep(self):
        stop = asyncio.Event()
        sleeper = FakeSleeper(stop, window=1.0)
        backlog = [5, 5, 3]

        async def cycle():
            return backlog.pop(0) if backlog else 0

        scheduler = PollScheduler(idle_interval=1.0, error_interval=5.0, sleep=sleeper)
        await scheduler.run(cycle, stop)

        # three draining cycles back to back, then one idle sleep
        assert scheduler.cycles == 4
        assert sleeper.sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_error_backoff_keeps_running(self):
        stop = asyncio.Event()
        sleeper = FakeSleeper(stop, window=6.0)
        errors = []
        outcomes = [RuntimeError("db down"), 0]

        async def cycle():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        scheduler = PollScheduler(
            idle_interval=1.0, error_interval=5.0, sleep=sleeper, on_error=lambda: errors.append(1)
        )
        await scheduler.run(cycle, stop)

        assert sleeper.sleeps == [5.0, 1.0]
        assert errors == [1]

    @pytest.mark.asyncio
    async def test_preset_stop_event(self):
        stop = asyncio.Event()
        stop.set()

        async def cycle():
            raise AssertionError("should not run")

        await PollScheduler(1.0, 1.0).run(cycle, stop)


class TestRunForever:

    @pytest.mark.asyncio
    async def test_drains_backlog_then_idles(self, engine, mcq_table, store, clock):
        await seed_rows(engine, mcq_table, 5)
        stop = asyncio.Event()
        sleeper = FakeSleeper(stop, window=3.0)
        llm = FakeLLM(default=json.dumps({"Concept": "c"}))
        transformer = Transformer(store.pipeline, llm, model="m", sleep=sleeper)
        worker = WorkQueueWorker(
            store, transformer, "worker-a",
            claim_limit=2, poll_interval=1.0, clock=clock, sleep=sleeper,
        )

        await worker.run_forever(stop)

        rows = await fetch_rows(engine, mcq_table)
        assert all(r["concept_json"] == {"Concept": "c"} for r in rows.values())
        assert len(llm.calls) == 5
        # only idle polls slept
        assert sleeper.sleeps == [1.0, 1.0, 1.0]

    @pytest.mark.asyncio
    async def test_loop_error_counted(self, store, clock, monkeypatch):
        stop = asyncio.Event()
        sleeper = FakeSleeper(stop, window=2.0)
        worker = WorkQueueWorker(
            store, Transformer(store.pipeline, FakeLLM(), model="m"), "worker-a",
            error_sleep=2.0, clock=clock, sleep=sleeper,
        )

        async def broken_cycle():
            raise RuntimeError("connection refused")

        monkeypatch.setattr(worker, "run_cycle", broken_cycle)
        await worker.run_forever(stop)

        assert sleeper.sleeps == [2.0]
        assert metrics.get_counter("loop_errors_total", {"pipeline": "test_concepts"}) == 1
