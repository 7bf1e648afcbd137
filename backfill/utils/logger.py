import contextvars
import logging
import sys

from pythonjsonlogger import jsonlogger

# Context variables for correlation
ctx_worker_id = contextvars.ContextVar("worker_id", default=None)
ctx_pipeline = contextvars.ContextVar("pipeline", default=None)
ctx_item_id = contextvars.ContextVar("item_id", default=None)

_CONTEXT_FIELDS = (
    ("worker_id", ctx_worker_id),
    ("pipeline", ctx_pipeline),
    ("item_id", ctx_item_id),
)

_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps each record with the worker's context fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value is not None and value != "":
                log_record[field] = str(value)


def bind_worker_context(worker_id: str, pipeline: str) -> None:
    """Tag every subsequent record in this context with the worker and pipeline."""
    ctx_worker_id.set(worker_id)
    ctx_pipeline.set(pipeline)


def setup_logger(log_format: str = "text", log_level: str = "INFO"):
    """Configure the root logger."""
    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if log_format.lower() == "json":
        handler.setFormatter(CorrelationJsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        ))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
