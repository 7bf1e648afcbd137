"""Declarative pipeline record — one entry per backfill workflow.

A pipeline names the table and columns a worker touches, how a prompt is
built from a row, and how the decoded LLM response is checked before it is
written back.  The worker engine itself never looks at prompt text or
output shape.

Validators receive the decoded value and the row inputs and return the value
to persist.  They raise ``MalformedOutputError`` when the shape is wrong so
the transformer can spend its one extra LLM call.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from backfill.transform.decode import MalformedOutputError

PromptBuilder = Callable[[dict[str, Any]], str]
GroupPromptBuilder = Callable[[list[dict[str, Any]]], str]
Validator = Callable[[Any, dict[str, Any]], Any]


def _passthrough(value: Any, _inputs: dict[str, Any]) -> Any:
    return value


@dataclass(frozen=True)
class Pipeline:
    name: str
    table: str
    input_columns: tuple[str, ...]
    output_column: str
    lock_column: str
    locked_at_column: str
    build_prompt: PromptBuilder | GroupPromptBuilder
    validate: Validator = _passthrough
    id_column: str = "id"
    order_column: str = "created_at"
    output_format: str = "json"       # json | markdown
    expect: str = "object"            # object | array | any (json only)
    json_mode: bool = False
    system_prompt: str | None = None
    model: str | None = None
    temperature: float | None = None
    # >1: one LLM call covers this many rows; build_prompt receives a list
    # of input dicts and the response must be an array of the same length.
    rows_per_call: int = 1
    # Optional bookkeeping columns for bounded retries.
    attempts_column: str | None = None
    error_column: str | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if not self.input_columns:
            raise ValueError(f"pipeline {self.name!r} needs at least one input column")
        if self.output_format not in ("json", "markdown"):
            raise ValueError(f"pipeline {self.name!r}: unknown output_format {self.output_format!r}")
        if self.expect not in ("object", "array", "any"):
            raise ValueError(f"pipeline {self.name!r}: unknown expect {self.expect!r}")
        if self.rows_per_call < 1:
            raise ValueError(f"pipeline {self.name!r}: rows_per_call must be >= 1")
        if self.rows_per_call > 1 and self.output_format != "json":
            raise ValueError(f"pipeline {self.name!r}: multi-row calls need JSON output")

    @property
    def batched(self) -> bool:
        return self.rows_per_call > 1


# ── Validator helpers ──────────────────────────────────────────


def require_keys(*keys: str, non_empty: bool = True) -> Validator:
    """Require a JSON object carrying *keys* (non-empty strings/lists by default)."""

    def _validate(value: Any, _inputs: dict[str, Any]) -> Any:
        if not isinstance(value, dict):
            raise MalformedOutputError(f"expected a JSON object, got {type(value).__name__}")
        missing = [k for k in keys if k not in value or (non_empty and not value[k])]
        if missing:
            raise MalformedOutputError(f"missing keys: {', '.join(missing)}")
        return value

    return _validate


def array_of_length(length: int, item_keys: tuple[str, ...] = ()) -> Validator:
    """Require an array of exactly *length* objects, each with *item_keys*."""

    def _validate(value: Any, _inputs: dict[str, Any]) -> Any:
        if not isinstance(value, list) or len(value) != length:
            got = len(value) if isinstance(value, list) else type(value).__name__
            raise MalformedOutputError(f"expected array of length {length}, got {got}")
        for idx, item in enumerate(value):
            if item_keys and (not isinstance(item, dict) or any(k not in item for k in item_keys)):
                raise MalformedOutputError(f"array item {idx} is missing one of {item_keys}")
        return value

    return _validate


def stamp_uuid(key: str = "uuid") -> Validator:
    """Add a fresh uuid to every object that does not already carry one."""

    def _validate(value: Any, _inputs: dict[str, Any]) -> Any:
        targets = value if isinstance(value, list) else [value]
        for obj in targets:
            if isinstance(obj, dict) and not obj.get(key):
                obj[key] = str(uuid.uuid4())
        return value

    return _validate


def markdown_sections(*headings: str) -> Validator:
    """Require each heading text to appear as a Markdown heading or bold line."""

    def _validate(value: Any, _inputs: dict[str, Any]) -> Any:
        if not isinstance(value, str) or not value.strip():
            raise MalformedOutputError("expected non-empty Markdown")
        for heading in headings:
            pattern = rf"^\s*(#+\s*|\*\*\s*|\d+[.)]\s*\**)[^\n]*{re.escape(heading)}"
            if not re.search(pattern, value, flags=re.IGNORECASE | re.MULTILINE):
                raise MalformedOutputError(f"Markdown is missing section {heading!r}")
        return value

    return _validate


def chain(*validators: Validator) -> Validator:
    """Run validators left to right, feeding each the previous result."""

    def _validate(value: Any, inputs: dict[str, Any]) -> Any:
        for v in validators:
            value = v(value, inputs)
        return value

    return _validate
