"""Database models for query analytics."""
from __future__ import annotations

from .base import Base
from .query_log import LearnedPattern, QueryFeedback, QueryLog

__all__ = ["Base", "LearnedPattern", "QueryFeedback", "QueryLog"]
