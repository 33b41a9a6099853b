"""Shared helpers for repositories."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session


class BaseRepository:
    """Base repository holding the session it works in."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @staticmethod
    def _coerce_datetime(value: Optional[datetime]) -> Optional[datetime]:
        # SQLite hands back naive datetimes even for timezone-aware columns.
        if value is None or value.tzinfo is not None:
            return value
        return value.replace(tzinfo=timezone.utc)
