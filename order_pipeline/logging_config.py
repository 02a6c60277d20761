import contextvars
import logging
import sys
import uuid
from typing import Optional

# Correlation id of the request or queue run currently executing.
correlation_id_var = contextvars.ContextVar("correlation_id", default="-")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(correlation_id)s]: %(message)s"


class CorrelationIdFilter(logging.Filter):
    """Stamps every record with the active correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        return True


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def bind_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the correlation id for the current context and return it."""
    correlation_id = correlation_id or new_correlation_id()
    correlation_id_var.set(correlation_id)
    return correlation_id


def get_correlation_id() -> str:
    return correlation_id_var.get()


def configure_logging(level: str = "INFO") -> logging.Logger:
    """
    Configure the service logger.

    Records from every ``order_pipeline.*`` module go through one stream
    handler that carries the correlation id filter. Calling this more than
    once does not add duplicate handlers.
    """
    logger = logging.getLogger("order_pipeline")
    logger.setLevel(level.upper())

    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(handler)
    return logger
