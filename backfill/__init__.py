"""Generic claim/lock/process/release worker for LLM backfill pipelines."""

__version__ = "0.1.0"
