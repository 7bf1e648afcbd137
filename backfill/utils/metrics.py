"""
Basic in-memory metrics counters for observability.

Provides simple counters for the worker's operational signals:
- rows_claimed_total: rows locked by this process
- stale_locks_released_total: expired locks cleared by the sweep
- items_total: processed rows by status (succeeded, failed)
- item_failures_total: failed rows by error kind
- llm_retries_total: transient LLM failures that were retried
- llm_tokens_total: prompt/completion tokens by model
- item_duration_seconds: histogram of per-row processing time
"""
from collections import defaultdict
from typing import Any


class MetricsCollector:
    """Simple in-memory metrics collector."""

    def __init__(self):
        self.counters: dict[str, int] = defaultdict(int)
        self.histograms: dict[str, list[float]] = defaultdict(list)

    def increment_counter(self, name: str, value: int = 1, labels: dict[str, str] | None = None):
        """Increment a counter metric."""
        key = self._build_key(name, labels)
        self.counters[key] += value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None):
        """Record a histogram observation."""
        key = self._build_key(name, labels)
        self.histograms[key].append(value)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        key = self._build_key(name, labels)
        return self.counters.get(key, 0)

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
        """Get histogram statistics (count, sum, min, max, avg, p95)."""
        key = self._build_key(name, labels)
        if not self.histograms.get(key):
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}
        return self._stats_for_key(key)

    def get_all_metrics(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "histograms": {k: self._stats_for_key(k) for k in self.histograms},
        }

    def reset(self):
        self.counters.clear()
        self.histograms.clear()

    def _stats_for_key(self, key: str) -> dict[str, Any]:
        values = sorted(self.histograms[key])
        n = len(values)
        return {
            "count": n,
            "sum": sum(values),
            "min": values[0],
            "max": values[-1],
            "avg": sum(values) / n,
            "p95": values[max(0, int(n * 0.95) - 1)],
        }

    @staticmethod
    def _build_key(name: str, labels: dict[str, str] | None) -> str:
        """Build metric key from name and labels."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Global metrics collector instance
metrics = MetricsCollector()


def record_rows_claimed(pipeline: str, count: int):
    metrics.increment_counter("rows_claimed_total", value=count, labels={"pipeline": pipeline})


def record_stale_locks_released(pipeline: str, count: int):
    metrics.increment_counter("stale_locks_released_total", value=count, labels={"pipeline": pipeline})


def record_item_result(pipeline: str, status: str, duration_seconds: float, error_kind: str | None = None):
    """
    Record the outcome of one processed row.

    Args:
        pipeline: Pipeline name
        status: succeeded or failed
        duration_seconds: Wall time from hand-off to persisted write
        error_kind: Failure class (transient, malformed, datastore, error)
    """
    metrics.increment_counter("items_total", labels={"pipeline": pipeline, "status": status})
    metrics.observe_histogram("item_duration_seconds", duration_seconds, labels={"pipeline": pipeline})
    if status == "failed":
        metrics.increment_counter(
            "item_failures_total", labels={"pipeline": pipeline, "kind": error_kind or "error"}
        )


def record_llm_retry(label: str):
    metrics.increment_counter("llm_retries_total", labels={"call": label})


def record_llm_usage(model: str, usage: dict[str, Any]):
    """Accumulate token usage reported by the completion endpoint."""
    for kind in ("prompt_tokens", "completion_tokens"):
        tokens = int(usage.get(kind) or 0)
        if tokens:
            metrics.increment_counter(
                "llm_tokens_total", value=tokens, labels={"model": model, "kind": kind.split("_")[0]}
            )


def record_loop_error(pipeline: str):
    metrics.increment_counter("loop_errors_total", labels={"pipeline": pipeline})


def get_metrics_summary() -> dict:
    """Get a summary of all metrics."""
    return metrics.get_all_metrics()


def pipeline_summary(pipeline: str) -> dict[str, Any]:
    """Headline numbers for one pipeline, as logged when a worker stops."""
    labels = {"pipeline": pipeline}
    durations = metrics.get_histogram_stats("item_duration_seconds", labels)
    return {
        "claimed": metrics.get_counter("rows_claimed_total", labels),
        "succeeded": metrics.get_counter("items_total", {**labels, "status": "succeeded"}),
        "failed": metrics.get_counter("items_total", {**labels, "status": "failed"}),
        "stale_released": metrics.get_counter("stale_locks_released_total", labels),
        "loop_errors": metrics.get_counter("loop_errors_total", labels),
        "avg_seconds": round(durations["avg"], 3),
        "p95_seconds": round(durations["p95"], 3),
    }
