"""Worker process entrypoint.

Run one process per pipeline (any number of processes per pipeline, on any
number of machines):

    WORKER_PIPELINE=concept_json python -m backfill.worker

    # With custom worker ID and concurrency:
    WORKER_ID=concept-1 WORKER_CONCURRENCY=8 python -m backfill.worker

The worker will:
1. Load backfill.config.settings (honours .env file)
2. Block until the pipeline table is reachable
3. Start the claim → process → release loop
4. Handle SIGINT/SIGTERM gracefully (release unfinished rows, then exit)
"""

from __future__ import annotations

import asyncio
import logging
import signal

from backfill.config import Settings, settings
from backfill.connectors.llm_client import LLMClient
from backfill.db.engine import build_engine
from backfill.db.store import WorkQueueStore
from backfill.pipelines import get_pipeline
from backfill.transform.retry import RetryPolicy
from backfill.transform.transformer import Transformer
from backfill.utils.logger import bind_worker_context, setup_logger
from backfill.utils.metrics import get_metrics_summary
from backfill.worker.loop import WorkQueueWorker, default_worker_id

logger = logging.getLogger("backfill.worker")


async def _wait_for_db(store: WorkQueueStore, max_retries: int = 10, delay: float = 2.0) -> None:
    """Wait until the pipeline table is accessible."""
    for attempt in range(1, max_retries + 1):
        try:
            await store.ping()
            logger.info("Database ready after %d attempt(s)", attempt)
            return
        except Exception as exc:
            logger.warning(
                "Database not ready (attempt %d/%d): %s", attempt, max_retries, exc
            )
            if attempt < max_retries:
                await asyncio.sleep(delay)

    raise RuntimeError(
        f"Table {store.pipeline.table!r} not accessible after {max_retries} attempts."
    )


def _llm_client(cfg: Settings) -> LLMClient:
    return LLMClient(
        base_url=cfg.LLM_BASE_URL,
        api_key=cfg.LLM_API_KEY,
        timeout=cfg.LLM_TIMEOUT_SECONDS,
        gateway_headers=cfg.LLM_GATEWAY_HEADERS or "",
    )


def build_worker(cfg: Settings, engine=None, llm=None) -> WorkQueueWorker:
    """Wire a WorkQueueWorker from settings."""
    pipeline = get_pipeline(cfg.WORKER_PIPELINE)
    store = WorkQueueStore(
        engine if engine is not None else build_engine(cfg),
        pipeline,
        max_row_attempts=cfg.WORKER_MAX_ROW_ATTEMPTS,
    )
    transformer = Transformer(
        pipeline,
        llm if llm is not None else _llm_client(cfg),
        model=cfg.WORKER_MODEL or pipeline.model or cfg.LLM_DEFAULT_MODEL,
        retry_policy=RetryPolicy(
            max_attempts=cfg.WORKER_LLM_MAX_ATTEMPTS,
            base_delay=cfg.WORKER_LLM_RETRY_DELAY_SECONDS,
            backoff=cfg.WORKER_LLM_BACKOFF,
        ),
        parse_retries=cfg.WORKER_PARSE_RETRIES,
    )
    return WorkQueueWorker(
        store,
        transformer,
        worker_id=cfg.WORKER_ID or default_worker_id(pipeline.name),
        claim_limit=cfg.WORKER_CLAIM_LIMIT,
        batch_size=cfg.WORKER_BATCH_SIZE,
        concurrency=cfg.WORKER_CONCURRENCY,
        lock_ttl=cfg.WORKER_LOCK_TTL_SECONDS,
        poll_interval=cfg.WORKER_POLL_INTERVAL,
        error_sleep=cfg.WORKER_ERROR_SLEEP,
    )


async def _run_until_stopped(worker: WorkQueueWorker) -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _handle_stop(*_):
        logger.info("Received shutdown signal — stopping worker")
        stop_event.set()

    # Register SIGINT/SIGTERM handlers (Unix only; Windows uses default)
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_stop)
        except (NotImplementedError, AttributeError):
            pass

    worker_task = asyncio.create_task(worker.run_forever(stop_event))
    stop_task = asyncio.create_task(stop_event.wait())

    try:
        # Run until stop signal (or until the loop dies on a BaseException)
        await asyncio.wait({worker_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (worker_task, stop_task):
            task.cancel()
        outcome, _ = await asyncio.gather(worker_task, stop_task, return_exceptions=True)
        if isinstance(outcome, Exception):
            logger.error("Worker loop exited with an error: %r", outcome)


async def main() -> None:
    """Worker process entrypoint."""
    setup_logger(settings.LOG_FORMAT, settings.LOG_LEVEL)

    worker = build_worker(settings)
    bind_worker_context(worker.worker_id, worker.pipeline_name)

    logger.info(
        "Starting backfill worker %s (pipeline=%s, model=%s, dialect=%s)",
        worker.worker_id, worker.pipeline_name, worker.transformer.model, settings.DB_DIALECT,
    )

    try:
        await _wait_for_db(
            worker.store,
            max_retries=settings.WORKER_DB_WAIT_RETRIES,
            delay=settings.WORKER_DB_WAIT_DELAY,
        )
        await _run_until_stopped(worker)
    finally:
        await worker.transformer.llm.aclose()
        await worker.store.engine.dispose()

    logger.debug("Final metrics: %s", get_metrics_summary())
    logger.info("Worker stopped cleanly")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
