"""Tests for worker process wiring and start-up."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from backfill.config import Settings
from backfill.worker import worker_main
from backfill.worker.worker_main import _wait_for_db, build_worker

from conftest import FakeLLM


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, DB_URL="sqlite+aiosqlite:///unused.db", **overrides)


class TestBuildWorker:

    @pytest.mark.asyncio
    async def test_wiring_from_settings(self, engine):
        cfg = _settings(
            WORKER_PIPELINE="topic_concepts",
            WORKER_ID="topic-1",
            WORKER_CLAIM_LIMIT=40,
            WORKER_BATCH_SIZE=5,
            WORKER_CONCURRENCY=2,
            WORKER_LOCK_TTL_SECONDS=300,
            WORKER_LLM_MAX_ATTEMPTS=5,
            WORKER_LLM_BACKOFF="exponential",
            WORKER_PARSE_RETRIES=0,
            WORKER_MAX_ROW_ATTEMPTS=3,
        )
        worker = build_worker(cfg, engine=engine, llm=FakeLLM())

        assert worker.worker_id == "topic-1"
        assert worker.pipeline_name == "topic_concepts"
        assert worker.store.pipeline.table == "all_subjects_raw"
        assert worker.store.max_row_attempts == 3
        assert (worker.claim_limit, worker.batch_size, worker.concurrency) == (40, 5, 2)
        assert worker.lock_ttl == 300
        assert worker.transformer.retry_policy.max_attempts == 5
        assert worker.transformer.retry_policy.backoff == "exponential"
        assert worker.transformer.parse_retries == 0

    @pytest.mark.asyncio
    async def test_model_precedence(self, engine):
        worker = build_worker(_settings(LLM_DEFAULT_MODEL="base-model"), engine=engine, llm=FakeLLM())
        assert worker.transformer.model == "base-model"

        worker = build_worker(
            _settings(LLM_DEFAULT_MODEL="base-model", WORKER_MODEL="override"), engine=engine, llm=FakeLLM()
        )
        assert worker.transformer.model == "override"

    @pytest.mark.asyncio
    async def test_generated_worker_id(self, engine):
        worker = build_worker(_settings(WORKER_PIPELINE="gap_mcq"), engine=engine, llm=FakeLLM())
        assert worker.worker_id.startswith("gap_mcq-")

    @pytest.mark.asyncio
    async def test_llm_client_uses_given_settings(self, engine):
        cfg = _settings(
            LLM_BASE_URL="https://gateway.internal/v1/",
            LLM_API_KEY="sk-worker",
            LLM_TIMEOUT_SECONDS=7.5,
            LLM_GATEWAY_HEADERS='{"X-Tenant-ID": "acme"}',
        )
        llm = build_worker(cfg, engine=engine).transformer.llm

        assert llm.base_url == "https://gateway.internal/v1"
        assert llm.api_key == "sk-worker"
        assert llm.timeout == 7.5
        assert llm._extra_headers == {"X-Tenant-ID": "acme"}

    @pytest.mark.asyncio
    async def test_unknown_pipeline(self, engine):
        with pytest.raises(KeyError):
            build_worker(_settings(WORKER_PIPELINE="missing"), engine=engine, llm=FakeLLM())


class TestWaitForDb:

    @pytest.mark.asyncio
    async def test_retries_until_ready(self):
        store = AsyncMock()
        store.ping.side_effect = [ConnectionError("refused"), ConnectionError("refused"), None]

        with patch("backfill.worker.worker_main.asyncio.sleep", new=AsyncMock()) as fake_sleep:
            await _wait_for_db(store, max_retries=5, delay=0.5)

        assert store.ping.await_count == 3
        assert fake_sleep.await_args_list == [call(0.5), call(0.5)]

    @pytest.mark.asyncio
    async def test_gives_up(self, engine, monkeypatch, store):
        async def fake_sleep(_):
            pass

        async def down():
            raise ConnectionError("refused")

        monkeypatch.setattr(worker_main.asyncio, "sleep", fake_sleep)
        monkeypatch.setattr(store, "ping", down)
        with pytest.raises(RuntimeError, match="mcq_bank"):
            await _wait_for_db(store, max_retries=2, delay=0)

    @pytest.mark.asyncio
    async def test_real_table_ready(self, store):
        await _wait_for_db(store, max_retries=1, delay=0)


class TestMain:

    @pytest.mark.asyncio
    async def test_resources_closed_when_db_never_ready(self):
        worker = MagicMock(worker_id="concept-1", pipeline_name="concept_json")
        worker.transformer.llm.aclose = AsyncMock()
        worker.store.engine.dispose = AsyncMock()

        with patch.object(worker_main, "setup_logger"), \
                patch.object(worker_main, "bind_worker_context"), \
                patch.object(worker_main, "build_worker", return_value=worker), \
                patch.object(worker_main, "_wait_for_db", new=AsyncMock(side_effect=RuntimeError("down"))):
            with pytest.raises(RuntimeError, match="down"):
                await worker_main.main()

        worker.transformer.llm.aclose.assert_awaited_once()
        worker.store.engine.dispose.assert_awaited_once()
        worker.run_forever.assert_not_called()
