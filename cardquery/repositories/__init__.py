"""SQLAlchemy-backed repositories for analytics and learned patterns."""

from .analytics_repository import AnalyticsRepository, SqlAnalyticsSink
from .base import BaseRepository
from .pattern_repository import PatternRepository

__all__ = ["AnalyticsRepository", "BaseRepository", "PatternRepository", "SqlAnalyticsSink"]
