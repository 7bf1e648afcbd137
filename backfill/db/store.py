"""Row-locking work queue over a single pipeline table.

Claiming strategy:
  Each statement is atomic on its own; there is no transaction spanning
  claim → process → release.

  1. Sweep:  clear this pipeline's lock pair where ``locked_at < cutoff``
              and output is still null (any owner).
  2. Select: ids with null output, null lock and non-null inputs, in
              creation order.
  3. Lock:   ``UPDATE … SET lock = owner WHERE id IN (…) AND lock IS NULL
              AND output IS NULL``.  Dialects with UPDATE … RETURNING get the
              locked rows back from the same statement; others fall back to a
              guarded update per id, keeping those with ``rowcount == 1``.

A row whose lock is swept while its first owner is still waiting on the LLM
can be processed twice; the final write is last-writer-wins.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import JSON, MetaData, Table, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from backfill.pipelines.base import Pipeline

logger = logging.getLogger("backfill.db.store")

_ERROR_MAX_LEN = 2000


def _for_column(col: Any, value: datetime) -> datetime:
    """Match *value* to the column's timezone awareness (naive columns store UTC)."""
    if value.tzinfo is not None and not getattr(col.type, "timezone", False):
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass
class WorkItem:
    """One claimed row: its id, input column values and lock state."""

    id: Any
    inputs: dict[str, Any]
    lock_owner: str | None = None
    locked_at: datetime | None = None
    attempts: int = 0


class WorkQueueStore:
    def __init__(
        self,
        engine: AsyncEngine,
        pipeline: Pipeline,
        table: Table | None = None,
        max_row_attempts: int = 0,
    ):
        self.engine = engine
        self.pipeline = pipeline
        self.max_row_attempts = max_row_attempts
        self._table = table
        if table is not None:
            self._check_columns(table)

    # ── Table access ───────────────────────────────────────────

    async def table(self) -> Table:
        """Return the pipeline table, reflecting it on first use."""
        if self._table is None:
            name = self.pipeline.table
            async with self.engine.connect() as conn:
                table = await conn.run_sync(
                    lambda sync_conn: Table(name, MetaData(), autoload_with=sync_conn)
                )
            self._check_columns(table)
            logger.debug("Reflected table %s (%d columns)", name, len(table.c))
            self._table = table
        return self._table

    def _check_columns(self, table: Table) -> None:
        p = self.pipeline
        wanted = [p.id_column, p.output_column, p.lock_column, p.locked_at_column, *p.input_columns]
        wanted += [c for c in (p.attempts_column, p.error_column) if c]
        missing = [c for c in wanted if c not in table.c]
        if missing:
            raise ValueError(
                f"table {table.name!r} is missing columns for pipeline {p.name!r}: {', '.join(missing)}"
            )

    async def ping(self) -> None:
        """Raise if the table is not reachable."""
        t = await self.table()
        async with self.engine.connect() as conn:
            await conn.execute(select(t.c[self.pipeline.id_column]).limit(1))

    # ── Claim steps ────────────────────────────────────────────

    async def release_stale_locks(self, cutoff: datetime) -> int:
        """Clear expired locks on unprocessed rows, whoever set them."""
        t = await self.table()
        p = self.pipeline
        lock, locked_at = t.c[p.lock_column], t.c[p.locked_at_column]
        stmt = (
            update(t)
            .where(
                t.c[p.output_column].is_(None),
                or_(
                    locked_at < _for_column(locked_at, cutoff),
                    and_(locked_at.is_(None), lock.is_not(None)),
                ),
            )
            .values({lock: None, locked_at: None})
        )
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
            return max(result.rowcount or 0, 0)

    def _eligible(self, t: Table) -> list:
        p = self.pipeline
        conds = [t.c[p.output_column].is_(None), t.c[p.lock_column].is_(None)]
        conds += [t.c[col].is_not(None) for col in p.input_columns]
        if p.attempts_column and self.max_row_attempts > 0:
            attempts = t.c[p.attempts_column]
            conds.append(func.coalesce(attempts, 0) < self.max_row_attempts)
        return conds

    async def select_candidates(self, limit: int) -> list[Any]:
        """Ids of up to *limit* claimable rows, oldest first."""
        t = await self.table()
        p = self.pipeline
        order_cols = [t.c[c] for c in dict.fromkeys((p.order_column, p.id_column)) if c in t.c]
        stmt = select(t.c[p.id_column]).where(*self._eligible(t)).order_by(*order_cols).limit(limit)
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [row[0] for row in result.fetchall()]

    def _returned_columns(self, t: Table) -> list:
        p = self.pipeline
        cols = [t.c[p.id_column], t.c[p.lock_column], t.c[p.locked_at_column]]
        cols += [t.c[c] for c in p.input_columns if c != p.id_column]
        if p.attempts_column:
            cols.append(t.c[p.attempts_column])
        return cols

    def _to_item(self, row: Any) -> WorkItem:
        p = self.pipeline
        return WorkItem(
            id=row[p.id_column],
            inputs={c: row[c] for c in p.input_columns},
            lock_owner=row[p.lock_column],
            locked_at=row[p.locked_at_column],
            attempts=int(row[p.attempts_column] or 0) if p.attempts_column else 0,
        )

    async def acquire(self, ids: Sequence[Any], owner: str, now: datetime) -> list[WorkItem]:
        """Lock the still-unlocked subset of *ids* for *owner*; return what was locked."""
        if not ids:
            return []
        t = await self.table()
        p = self.pipeline
        id_col = t.c[p.id_column]
        guard = [t.c[p.lock_column].is_(None), t.c[p.output_column].is_(None)]
        locked_at = t.c[p.locked_at_column]
        values = {t.c[p.lock_column]: owner, locked_at: _for_column(locked_at, now)}
        cols = self._returned_columns(t)

        async with self.engine.begin() as conn:
            if self.engine.dialect.update_returning:
                result = await conn.execute(
                    update(t).where(id_col.in_(list(ids)), *guard).values(values).returning(*cols)
                )
                rows = result.mappings().all()
            else:
                locked_ids = []
                for item_id in ids:
                    result = await conn.execute(
                        update(t).where(id_col == item_id, *guard).values(values)
                    )
                    if result.rowcount == 1:
                        locked_ids.append(item_id)
                rows = []
                if locked_ids:
                    result = await conn.execute(select(*cols).where(id_col.in_(locked_ids)))
                    rows = result.mappings().all()

        position = {item_id: n for n, item_id in enumerate(ids)}
        items = [self._to_item(row) for row in rows]
        items.sort(key=lambda item: position.get(item.id, len(position)))
        return items

    # ── Completion / release ───────────────────────────────────

    def _encode_output(self, t: Table, value: Any) -> Any:
        col = t.c[self.pipeline.output_column]
        if isinstance(col.type, JSON) or isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)

    async def complete(self, item_id: Any, output: Any) -> int:
        """Write *output* and clear the lock pair in one statement."""
        t = await self.table()
        p = self.pipeline
        stmt = (
            update(t)
            .where(t.c[p.id_column] == item_id)
            .values({
                t.c[p.output_column]: self._encode_output(t, output),
                t.c[p.lock_column]: None,
                t.c[p.locked_at_column]: None,
            })
        )
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
            return result.rowcount or 0

    async def release(
        self,
        item_ids: Sequence[Any],
        error: str | None = None,
        count_attempt: bool = True,
        owner: str | None = None,
    ) -> int:
        """Clear the lock pair without writing output, leaving rows claimable.

        With *owner*, only rows still locked by that owner are touched; a row
        whose lock was swept and re-claimed keeps its new owner.
        """
        if not item_ids:
            return 0
        t = await self.table()
        p = self.pipeline
        values: dict = {t.c[p.lock_column]: None, t.c[p.locked_at_column]: None}
        if p.attempts_column and count_attempt:
            attempts = t.c[p.attempts_column]
            values[attempts] = func.coalesce(attempts, 0) + 1
        if p.error_column and error:
            values[t.c[p.error_column]] = error[:_ERROR_MAX_LEN]
        conds = [t.c[p.id_column].in_(list(item_ids))]
        if owner is not None:
            conds.append(t.c[p.lock_column] == owner)
        stmt = update(t).where(*conds).values(values)
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
            return result.rowcount or 0
