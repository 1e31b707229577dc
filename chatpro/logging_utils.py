import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator

from pythonjsonlogger import jsonlogger


# Context fields (session_id, channel_id, ...) attached to every record logged
# while they are bound
log_context_ctx: ContextVar[dict] = ContextVar("log_context", default={})


def get_log_context() -> dict:
    """Get the fields bound for the current context."""
    return dict(log_context_ctx.get())


@contextmanager
def log_context(**fields) -> Iterator[None]:
    """
    Bind extra fields to all log records emitted inside the block.

    Nested blocks extend the outer fields; values of None are skipped.
    """
    merged = dict(log_context_ctx.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = log_context_ctx.set(merged)
    try:
        yield
    finally:
        log_context_ctx.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and context fields."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        # Ensure timestamp is in ISO-8601 format with Z suffix
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        # Explicit extra= values win over bound context
        for key, value in log_context_ctx.get().items():
            if key not in log_record:
                log_record[key] = value


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the client.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    # SQLAlchemy engine logging is noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logger
