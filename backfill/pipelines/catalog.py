"""Shipped pipeline entries.

Each entry is configuration only: table, columns, prompt builder and
validator.  Adding a workflow means adding an entry here (or registering
one from another module), never another worker.
"""

from __future__ import annotations

import json
from typing import Any

from backfill.pipelines.base import (
    Pipeline,
    array_of_length,
    chain,
    markdown_sections,
    require_keys,
    stamp_uuid,
)
from backfill.pipelines.registry import register


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


# ── Single JSON object per row ──────────────────────────────────


def _concept_prompt(inputs: dict[str, Any]) -> str:
    return (
        "You are an experienced medical exam tutor.\n"
        "Read the multiple-choice question below and return only a JSON object:\n"
        '{ "Concept": "...", "Explanation": "..." }\n'
        "- Concept: the single idea the question tests.\n"
        "- Explanation: define it, then list 5-6 high-yield facts.\n"
        "- Do not reveal the correct option.\n\n"
        f"MCQ:\n{_as_text(inputs['mcq'])}"
    )


register(Pipeline(
    name="concept_json",
    description="Concept + explanation object for each question bank row",
    table="mcq_bank",
    input_columns=("mcq",),
    output_column="concept_json",
    lock_column="concept_json_lock",
    locked_at_column="concept_json_locked_at",
    build_prompt=_concept_prompt,
    validate=chain(require_keys("Concept", "Explanation"), stamp_uuid()),
    expect="object",
    json_mode=True,
))


# ── Fixed-length JSON array per row ─────────────────────────────

CONCEPTS_PER_TOPIC = 10


def _topic_concepts_prompt(inputs: dict[str, Any]) -> str:
    return (
        f"Split the study material below into exactly {CONCEPTS_PER_TOPIC} concepts.\n"
        "Return only a JSON array; each element must be an object with the keys\n"
        '"title" and "summary".\n\n'
        f"Material:\n{_as_text(inputs['concept'])}"
    )


register(Pipeline(
    name="topic_concepts",
    description="Exactly ten concept cards per raw topic",
    table="all_subjects_raw",
    input_columns=("concept",),
    output_column="concept_json",
    lock_column="concept_lock",
    locked_at_column="concept_lock_at",
    build_prompt=_topic_concepts_prompt,
    validate=chain(array_of_length(CONCEPTS_PER_TOPIC, ("title", "summary")), stamp_uuid()),
    expect="array",
))


# ── Several rows per LLM call ───────────────────────────────────


def _gap_mcq_prompt(batch: list[dict[str, Any]]) -> str:
    numbered = "\n".join(f"{n}. {_as_text(row['lg_1_text'])}" for n, row in enumerate(batch, 1))
    return (
        f"For each of the {len(batch)} learning gaps below write one MCQ.\n"
        "Return only a JSON array with one object per gap, in the same order:\n"
        '{ "stem": "...", "options": {"A": "...", "B": "...", "C": "...", "D": "..."},'
        ' "correct_answer": "A" }\n\n'
        f"Learning gaps:\n{numbered}"
    )


register(Pipeline(
    name="gap_mcq",
    description="One follow-up MCQ per learning gap, several gaps per call",
    table="concepts_vertical",
    id_column="vertical_id",
    order_column="vertical_id",
    input_columns=("lg_1_text",),
    output_column="mcq_2",
    lock_column="mcq_lock",
    locked_at_column="mcq_lock_at",
    build_prompt=_gap_mcq_prompt,
    validate=chain(require_keys("stem", "options", "correct_answer"), stamp_uuid()),
    rows_per_call=5,
))


# ── Markdown output ─────────────────────────────────────────────


def _revision_notes_prompt(inputs: dict[str, Any]) -> str:
    return (
        "Write last-minute revision notes in Markdown for the topic below.\n"
        "Use exactly two numbered sections: **Central Concepts** and **High-Yield Facts**.\n"
        "Do not wrap the answer in code fences and do not answer in JSON.\n\n"
        f"Topic:\n{_as_text(inputs['topic'])}"
    )


register(Pipeline(
    name="revision_notes",
    description="Markdown revision notes per topic",
    table="topics",
    input_columns=("topic",),
    output_column="notes_md",
    lock_column="notes_lock",
    locked_at_column="notes_locked_at",
    build_prompt=_revision_notes_prompt,
    validate=markdown_sections("Central Concepts", "High-Yield Facts"),
    output_format="markdown",
    attempts_column="notes_attempts",
    error_column="notes_error",
))
