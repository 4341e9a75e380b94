"""Context-local logging fields for ride sessions."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

_log_context: ContextVar[dict[str, Any] | None] = ContextVar("ride_sync_log_context", default=None)


class LogContext:
    """Task-local storage for log context fields.

    Backed by a ContextVar so concurrent sessions on one event loop do not
    see each other's fields.
    """

    @classmethod
    def set(cls, **kwargs: Any) -> None:
        context = dict(_log_context.get() or {})
        context.update(kwargs)
        _log_context.set(context)

    @classmethod
    def get(cls) -> dict[str, Any]:
        return dict(_log_context.get() or {})

    @classmethod
    def clear(cls) -> None:
        _log_context.set({})


class ContextFilter(logging.Filter):
    """Injects LogContext fields into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in LogContext.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Context manager that sets logging context fields.

    Fields are injected into log records via ContextFilter, which must
    be attached to the handler (see setup_logging).
    """
    token = _log_context.set({**(_log_context.get() or {}), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)


@contextmanager
def log_ride_context(ride_id: str, **kwargs: Any) -> Iterator[None]:
    """Convenience context manager for ride session operations."""
    correlation_id = kwargs.pop("correlation_id", ride_id)
    with log_context(ride_id=ride_id, correlation_id=correlation_id, **kwargs):
        yield
