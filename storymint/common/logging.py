"""JSON logs carrying the mint correlation fields.

Request handlers and the outbox worker bind `trace_id`, `event_id` and
`story_id` through `bind_log_context`; every record emitted inside the block
carries them, including records from library loggers.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from storymint.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
story_id_ctx: ContextVar[str] = ContextVar("story_id", default="")

_CONTEXT_VARS = {"trace_id": trace_id_ctx, "event_id": event_id_ctx, "story_id": story_id_ctx}


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in _CONTEXT_VARS.items():
            setattr(record, field, var.get())
        return True


@contextmanager
def bind_log_context(**fields: str | None):
    """Set correlation fields for the duration of the block.

    Unknown field names raise `KeyError`; `None` values are skipped.
    """

    tokens = []
    try:
        for field, value in fields.items():
            if value is None:
                continue
            var = _CONTEXT_VARS[field]
            tokens.append((var, var.set(value)))
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(level: str | None = None) -> None:
    """Send JSON records to stdout through a single root handler."""

    context_filter = ContextFilter()
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(event_id)s %(story_id)s %(message)s",
            rename_fields={"levelname": "level"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    root.addFilter(context_filter)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


logger = logging.getLogger("storymint")
