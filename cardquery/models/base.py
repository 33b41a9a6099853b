"""Declarative base for the analytics and learned-pattern tables."""
from __future__ import annotations

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

# Stable constraint names so the tables can be migrated on any backend.
NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base shared by ``QueryLog``, ``QueryFeedback`` and ``LearnedPattern``."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)
