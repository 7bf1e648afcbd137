"""LLM client connector (OpenAI-compatible chat completions API).

Async, one ``httpx.AsyncClient`` per instance.  Any failure (missing key,
HTTP status, transport error, empty choices) surfaces as ``LLMCallError``
whose message keeps the status code or transport reason, so the retry layer
can classify it by text.
"""

from __future__ import annotations

import json as _json
import logging
from typing import Any

import httpx

from backfill.config import settings

logger = logging.getLogger("backfill.connectors.llm")


class LLMCallError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LLMClient:
    """OpenAI-compatible chat completion client with gateway header support.

    Parameters
    ----------
    base_url : str | None
        Override the global ``LLM_BASE_URL`` for this client instance.
    api_key : str | None
        Override the global ``LLM_API_KEY``.
    extra_headers : dict[str, str] | None
        Additional HTTP headers merged on every request (e.g. gateway auth).
        These are merged *on top of* the global ``LLM_GATEWAY_HEADERS``.
    gateway_headers : str | None
        JSON object of headers; defaults to the global ``LLM_GATEWAY_HEADERS``.
    transport : httpx.AsyncBaseTransport | None
        Custom transport, mainly ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        extra_headers: dict[str, str] | None = None,
        timeout: float | None = None,
        gateway_headers: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.LLM_BASE_URL).rstrip("/")
        self.api_key = api_key or settings.LLM_API_KEY
        self.timeout = timeout if timeout is not None else settings.LLM_TIMEOUT_SECONDS
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        # Merge gateway headers from config + per-instance overrides
        self._extra_headers: dict[str, str] = {}
        if gateway_headers is None:
            gateway_headers = settings.LLM_GATEWAY_HEADERS
        if gateway_headers:
            try:
                parsed = _json.loads(gateway_headers)
                if isinstance(parsed, dict):
                    self._extra_headers.update(parsed)
            except (_json.JSONDecodeError, TypeError):
                logger.warning("LLM_GATEWAY_HEADERS is not valid JSON — ignored")
        if extra_headers:
            self._extra_headers.update(extra_headers)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def complete(
        self,
        prompt: str,
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
        json_mode: bool = False,
    ) -> dict[str, Any]:
        if not self.api_key:
            raise LLMCallError("LLM_API_KEY is not configured")

        headers: dict[str, str] = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        headers.update(self._extra_headers)

        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        body: dict[str, Any] = {"model": model, "messages": messages}
        # reasoning models reject sampling params
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        url = f"{self.base_url}/chat/completions"
        logger.debug("LLM call: model=%s url=%s", model, url)

        try:
            resp = await self._http().post(url, json=body, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise LLMCallError(f"HTTP {status}: {exc.response.text[:200]}", status_code=status) from exc
        except httpx.TimeoutException as exc:
            raise LLMCallError(f"timeout: {exc!r}") from exc
        except httpx.RequestError as exc:
            raise LLMCallError(f"{type(exc).__name__}: {exc}") from exc
        except ValueError as exc:
            raise LLMCallError(f"LLM response is not JSON: {exc}") from exc

        choices = (data.get("choices") if isinstance(data, dict) else None) or []
        if not choices:
            raise LLMCallError("LLM response missing choices")

        message = choices[0].get("message") or {}
        text = message.get("content") or ""
        usage = data.get("usage") or {}

        return {
            "text": text,
            "raw": data,
            "usage": {
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
                "total_tokens": usage.get("total_tokens", 0),
                "model": data.get("model", model),
            },
        }
