"""Exception hierarchy raised by the query pipeline."""
from __future__ import annotations

from typing import Optional


class QueryError(Exception):
    """Base class for every error the pipeline raises on purpose."""

    failure_kind: str = "query_error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class ExtractionAmbiguity(QueryError):
    """Nothing usable could be extracted; the caller should ask for clarification."""

    failure_kind = "extraction_ambiguity"


class InvalidQueryShape(QueryError):
    """The derived plan is structurally invalid (user facing, not a system error)."""

    failure_kind = "invalid_query_shape"


class ExternalServiceFailure(QueryError):
    """An embedding, vector search or language model call failed or timed out."""

    failure_kind = "external_service_failure"

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class ExecutionError(QueryError):
    """A plan that passed validation could not be executed."""

    failure_kind = "execution_error"


__all__ = [
    "ExecutionError",
    "ExternalServiceFailure",
    "ExtractionAmbiguity",
    "InvalidQueryShape",
    "QueryError",
]
