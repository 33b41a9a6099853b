"""Natural-language query engine over credit-card records."""

from .core import get_logger, get_settings
from .query import QueryPipeline, build_pipeline

__all__ = ["QueryPipeline", "build_pipeline", "get_logger", "get_settings"]
