"""Strict decoding of raw LLM text into JSON values or Markdown.

Models wrap answers in code fences, prepend chatter, or append notes.  The
decoder strips an outer fence, slices from the first opening brace/bracket
to the matching last closing one, and then parses strictly with ``json``.
Anything that still fails is a ``MalformedOutputError``.

Callers that want exceptions use ``DecodeResult.unwrap()``; callers that
want to branch on the outcome inspect ``ok``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_FENCE_OPEN = re.compile(r"^\s*```[\w-]*[ \t]*\n?")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")

_PAIRS = {"object": ("{", "}"), "array": ("[", "]")}


class MalformedOutputError(ValueError):
    """LLM output did not decode into the shape the pipeline requires."""


@dataclass(frozen=True)
class DecodeResult:
    ok: bool
    value: Any = None
    error: str | None = None

    def unwrap(self) -> Any:
        if not self.ok:
            raise MalformedOutputError(self.error or "decode failed")
        return self.value


def strip_code_fences(raw: str | None) -> str:
    """Remove one outer ```lang ... ``` wrapper, if present."""
    text = (raw or "").strip()
    if text.startswith("```"):
        text = _FENCE_OPEN.sub("", text, count=1)
        text = _FENCE_CLOSE.sub("", text, count=1)
    return text.strip()


def _slice(text: str, expect: str) -> str | None:
    if expect in _PAIRS:
        opener, closer = _PAIRS[expect]
        first, last = text.find(opener), text.rfind(closer)
        if first == -1 or last < first:
            return None
        return text[first : last + 1]

    # "any": take whichever container opens first
    candidates = []
    for opener, closer in _PAIRS.values():
        first, last = text.find(opener), text.rfind(closer)
        if first != -1 and last > first:
            candidates.append((first, text[first : last + 1]))
    if not candidates:
        return None
    return min(candidates)[1]


def decode_json(raw: str | None, expect: str = "any") -> DecodeResult:
    """Decode *raw* as a JSON object (``expect="object"``), array, or either."""
    text = strip_code_fences(raw)
    if not text:
        return DecodeResult(ok=False, error="empty response")

    body = _slice(text, expect)
    if body is None:
        wanted = {"object": "JSON object", "array": "JSON array"}.get(expect, "JSON value")
        return DecodeResult(ok=False, error=f"no {wanted} found")

    try:
        value = json.loads(body)
    except json.JSONDecodeError as exc:
        return DecodeResult(ok=False, error=f"invalid JSON: {exc.msg} at pos {exc.pos}")

    if expect == "object" and not isinstance(value, dict):
        return DecodeResult(ok=False, error="expected a JSON object")
    if expect == "array" and not isinstance(value, list):
        return DecodeResult(ok=False, error="expected a JSON array")
    return DecodeResult(ok=True, value=value)


def decode_markdown(raw: str | None) -> DecodeResult:
    """Return Markdown with any outer fence removed; empty text is an error."""
    text = strip_code_fences(raw)
    if not text:
        return DecodeResult(ok=False, error="empty response")
    if text.startswith(("{", "[")):
        # asked for Markdown, got JSON
        try:
            json.loads(text)
        except json.JSONDecodeError:
            pass
        else:
            return DecodeResult(ok=False, error="expected Markdown, got JSON")
    return DecodeResult(ok=True, value=text)
