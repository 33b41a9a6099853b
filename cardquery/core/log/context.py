"""Per-query values (user id, query id) attached to every log line."""
from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from typing import Iterator, Mapping

_fields: contextvars.ContextVar[Mapping[str, object]] = contextvars.ContextVar(
    "cardquery_log_fields", default={}
)

# Rendered first, in this order; anything else follows alphabetically.
LEADING_FIELDS: tuple[str, ...] = ("user_id", "query_id")


def render(fields: Mapping[str, object]) -> str:
    if not fields:
        return ""
    keys = [key for key in LEADING_FIELDS if key in fields]
    keys += sorted(key for key in fields if key not in LEADING_FIELDS)
    return "[" + " ".join(f"{key}={fields[key]}" for key in keys) + "] "


class LogContext:
    """Bind values to the current task or thread."""

    def bind(self, **values: object) -> None:
        self._set(values)

    def current(self) -> dict[str, object]:
        return dict(_fields.get())

    @contextmanager
    def scope(self, **values: object) -> Iterator[None]:
        """Bind ``values`` inside the block only."""
        token = self._set(values)
        try:
            yield
        finally:
            _fields.reset(token)

    @staticmethod
    def _set(values: Mapping[str, object]) -> contextvars.Token:
        merged = {**_fields.get(), **{k: v for k, v in values.items() if v is not None}}
        return _fields.set(merged)


class ContextFilter(logging.Filter):
    """Expose the bound values as ``%(context)s``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = render(_fields.get())
        return True


log_context = LogContext()
