from backfill.pipelines.base import Pipeline
from backfill.pipelines.registry import get_pipeline, list_pipelines, register

__all__ = ["Pipeline", "get_pipeline", "list_pipelines", "register"]
