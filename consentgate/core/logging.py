from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import logging
from typing import Iterator

from consentgate.core.config import get_settings
from consentgate.core.redaction import redact_secrets


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s correlation_id=%(correlation_id)s %(message)s"

# Correlation id of the lifecycle operation running in the current task.
current_correlation_id: ContextVar[str] = ContextVar("current_correlation_id", default="-")

_configured = False


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = current_correlation_id.get()
        return True


class RedactingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        # Render args first so secrets passed as %s arguments are also masked.
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        record.msg = redact_secrets(message)
        record.args = None
        return True


@contextmanager
def bind_correlation_id(correlation_id: str) -> Iterator[None]:
    token = current_correlation_id.set(correlation_id)
    try:
        yield
    finally:
        current_correlation_id.reset(token)


def configure_logging() -> None:
    # Install a single root handler; repeated app factories must not stack handlers.
    global _configured
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    handler.addFilter(RedactingFilter())
    root.addHandler(handler)
    _configured = True
