"""Pydantic schemas shared across the package."""

from .cards import CardRecord

__all__ = ["CardRecord"]
