"""Name → Pipeline lookup."""

from __future__ import annotations

from backfill.pipelines.base import Pipeline

_registry: dict[str, Pipeline] = {}


def register(pipeline: Pipeline, *, replace: bool = False) -> Pipeline:
    if pipeline.name in _registry and not replace:
        raise ValueError(f"pipeline {pipeline.name!r} is already registered")
    _registry[pipeline.name] = pipeline
    return pipeline


def get_pipeline(name: str) -> Pipeline:
    # catalog registers itself on import
    import backfill.pipelines.catalog  # noqa: F401

    try:
        return _registry[name]
    except KeyError:
        known = ", ".join(sorted(_registry)) or "none"
        raise KeyError(f"unknown pipeline {name!r} (registered: {known})") from None


def list_pipelines() -> list[Pipeline]:
    import backfill.pipelines.catalog  # noqa: F401

    return [_registry[name] for name in sorted(_registry)]
