"""Shared fixtures for worker tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import JSON, Column, DateTime, Integer, MetaData, String, Table, Text, insert, select

from backfill.config import Settings
from backfill.db.engine import build_engine
from backfill.db.store import WorkQueueStore
from backfill.pipelines.base import Pipeline, require_keys
from backfill.utils.metrics import metrics


# ── Table + pipeline ────────────────────────────────────────────


def make_mcq_table(metadata: MetaData) -> Table:
    return Table(
        "mcq_bank",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("mcq", Text, nullable=True),
        Column("concept_json", JSON, nullable=True),
        Column("concept_json_lock", String(128), nullable=True),
        Column("concept_json_locked_at", DateTime(timezone=True), nullable=True),
        Column("attempts", Integer, nullable=True),
        Column("last_error", Text, nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=True),
    )


def make_pipeline(**overrides: Any) -> Pipeline:
    fields: dict[str, Any] = dict(
        name="test_concepts",
        table="mcq_bank",
        input_columns=("mcq",),
        output_column="concept_json",
        lock_column="concept_json_lock",
        locked_at_column="concept_json_locked_at",
        build_prompt=lambda inputs: f"Explain: {inputs['mcq']}",
        validate=require_keys("Concept"),
    )
    fields.update(overrides)
    return Pipeline(**fields)


# ── Fakes ───────────────────────────────────────────────────────


class FakeClock:
    """Mutable UTC clock for lock timestamps and TTL cutoffs."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeLLM:
    """Scripted LLM client: each call pops the next reply (text or exception)."""

    def __init__(self, *replies: Any, default: Any = None):
        self.replies = list(replies)
        self.default = default
        self.calls: list[dict[str, Any]] = []

    async def complete(self, prompt: str, model: str, **kwargs: Any) -> dict[str, Any]:
        self.calls.append({"prompt": prompt, "model": model, **kwargs})
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            reply = reply(prompt)
        return {"text": reply, "usage": {"prompt_tokens": 10, "completion_tokens": 5}}

    async def aclose(self) -> None:
        pass


async def _no_sleep(_seconds: float) -> None:
    return None


# ── Fixtures ────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_sleep():
    return _no_sleep


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine(Settings(DB_URL=f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"))
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def mcq_table(engine) -> Table:
    metadata = MetaData()
    table = make_mcq_table(metadata)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return table


@pytest.fixture
def pipeline() -> Pipeline:
    return make_pipeline()


@pytest.fixture
def store(engine, mcq_table, pipeline) -> WorkQueueStore:
    return WorkQueueStore(engine, pipeline, table=mcq_table)


# ── Helpers used by several modules ─────────────────────────────


async def seed_rows(engine, table: Table, count: int, **extra: Any) -> list[int]:
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    rows = [
        {"id": n, "mcq": f"Question {n}", "created_at": base + timedelta(minutes=n), **extra}
        for n in range(1, count + 1)
    ]
    async with engine.begin() as conn:
        await conn.execute(insert(table), rows)
    return [r["id"] for r in rows]


async def fetch_rows(engine, table: Table) -> dict[int, dict[str, Any]]:
    async with engine.connect() as conn:
        result = await conn.execute(select(table).order_by(table.c.id))
        return {row["id"]: dict(row) for row in result.mappings().all()}


async def insert_rows(engine, table: Table, rows: list[dict[str, Any]]) -> None:
    """Insert rows one statement each, so rows may set different columns."""
    async with engine.begin() as conn:
        for row in rows:
            await conn.execute(insert(table).values(**row))
