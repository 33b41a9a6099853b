"""HTTP surface for the query pipeline."""

from .router import configure_pipeline, get_pipeline, router

__all__ = ["configure_pipeline", "get_pipeline", "router"]
