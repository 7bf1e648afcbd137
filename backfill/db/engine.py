"""SQLAlchemy async engine factory."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from backfill.config import Settings, settings as _default_settings


def _build_engine_kwargs(cfg: Settings) -> dict:
    """Return engine kwargs appropriate for the configured dialect."""
    if cfg.is_postgres:
        return {
            "echo": cfg.DB_ECHO,
            "pool_size": cfg.DB_POOL_SIZE,
            "max_overflow": cfg.DB_MAX_OVERFLOW,
            "pool_timeout": cfg.DB_POOL_TIMEOUT,
            "pool_pre_ping": True,   # ensure stale connections are recycled
            "pool_recycle": 1800,    # recycle connections older than 30 min
        }
    # SQLite: single file, no pool tunables
    return {
        "echo": cfg.DB_ECHO,
        "connect_args": {"check_same_thread": False},
    }


def _set_sqlite_pragmas(dbapi_conn, _conn_rec) -> None:
    # concurrent lock attempts wait on busy_timeout instead of failing fast
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def build_engine(cfg: Settings | None = None) -> AsyncEngine:
    """Create an async engine for ``cfg.DB_URL`` (defaults to the global settings)."""
    cfg = cfg or _default_settings
    engine = create_async_engine(cfg.DB_URL, **_build_engine_kwargs(cfg))
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    return engine
