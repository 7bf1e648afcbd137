"""Backfill worker package.

A worker drains one pipeline: it claims rows whose output column is null,
sends each through the pipeline's prompt/validator via the LLM client and
writes the result back, using a lock/lock-timestamp column pair on the
table as the only coordination between processes.

Start one or more processes per pipeline:
    WORKER_PIPELINE=concept_json python -m backfill.worker
"""
