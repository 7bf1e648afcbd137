"""Transformer — row inputs → prompt → LLM → decoded, validated output."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

from backfill.db.store import WorkItem
from backfill.pipelines.base import Pipeline
from backfill.transform.decode import MalformedOutputError, decode_json, decode_markdown
from backfill.transform.retry import RetryPolicy, call_with_retry
from backfill.utils.metrics import record_llm_usage

logger = logging.getLogger("backfill.transform")


class Transformer:
    """Runs one pipeline's prompt/response cycle against an LLM client.

    ``llm`` is anything with an awaitable ``complete(prompt, model=..., ...)``
    returning ``{"text": ..., "usage": {...}}``.  Transient LLM errors are
    retried per ``retry_policy``; a response that fails to decode or validate
    earns ``parse_retries`` fresh calls before ``MalformedOutputError``
    propagates.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        llm: Any,
        model: str,
        retry_policy: RetryPolicy | None = None,
        parse_retries: int = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pipeline = pipeline
        self.llm = llm
        self.model = model
        self.retry_policy = retry_policy or RetryPolicy()
        self.parse_retries = parse_retries
        self._sleep = sleep

    async def _invoke(self, prompt: str) -> str:
        p = self.pipeline

        async def _call() -> dict[str, Any]:
            return await self.llm.complete(
                prompt,
                model=self.model,
                system_prompt=p.system_prompt,
                json_mode=p.json_mode,
                temperature=p.temperature,
            )

        result = await call_with_retry(_call, self.retry_policy, label=p.name, sleep=self._sleep)
        record_llm_usage(self.model, result.get("usage") or {})
        return result.get("text") or ""

    async def _generate(self, prompt: str, finish: Callable[[str], Any]) -> Any:
        calls = 1 + self.parse_retries
        for n in range(1, calls + 1):
            raw = await self._invoke(prompt)
            try:
                return finish(raw)
            except MalformedOutputError as exc:
                if n >= calls:
                    raise
                logger.warning(
                    "%s: malformed output (%s), calling once more. Raw snippet: %r",
                    self.pipeline.name, exc, raw[:200],
                )

    def _decode(self, raw: str) -> Any:
        if self.pipeline.output_format == "markdown":
            return decode_markdown(raw).unwrap()
        return decode_json(raw, self.pipeline.expect).unwrap()

    async def transform(self, item: WorkItem) -> Any:
        """Produce the value to persist for a single row."""
        prompt = self.pipeline.build_prompt(item.inputs)

        def finish(raw: str) -> Any:
            return self.pipeline.validate(self._decode(raw), item.inputs)

        return await self._generate(prompt, finish)

    async def transform_group(self, items: Sequence[WorkItem]) -> list[Any]:
        """One LLM call for several rows; element *i* of the reply belongs to row *i*."""
        prompt = self.pipeline.build_prompt([item.inputs for item in items])

        def finish(raw: str) -> list[Any]:
            value = decode_json(raw, "any").unwrap()
            if isinstance(value, dict):
                value = [value]
            if len(value) != len(items):
                raise MalformedOutputError(f"expected array of length {len(items)}, got {len(value)}")
            return [self.pipeline.validate(v, item.inputs) for v, item in zip(value, items)]

        return await self._generate(prompt, finish)
