"""ORM models for query analytics, user feedback and learned patterns."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from .base import Base

_ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


class QueryLog(Base):
    """One processed natural-language query and how it was answered."""

    __tablename__ = "query_log"

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)
    record_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    query_text: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    entities: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    structured_query: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    intent_label: Mapped[Optional[str]] = mapped_column(String(32))
    intent_confidence: Mapped[Optional[float]] = mapped_column(Float)
    intent_method: Mapped[Optional[str]] = mapped_column(String(32))
    response_time_ms: Mapped[float] = mapped_column(Float, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_kind: Mapped[Optional[str]] = mapped_column(String(32))
    pattern_id_used: Mapped[Optional[str]] = mapped_column(String(32), index=True)
    decomposition_method: Mapped[Optional[str]] = mapped_column(String(32))
    row_count: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class LearnedPattern(Base):
    """Persisted snapshot of one learned query pattern."""

    __tablename__ = "learned_pattern"

    pattern_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    trigger_signature: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    near_signature: Mapped[Optional[str]] = mapped_column(String(40), index=True)
    template: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    intent_label: Mapped[Optional[str]] = mapped_column(String(32))
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class QueryFeedback(Base):
    """One user judgement of an answered query."""

    __tablename__ = "query_feedback"

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)
    feedback_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    record_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    signal: Mapped[Optional[str]] = mapped_column(String(32))
    rating: Mapped[Optional[int]] = mapped_column(Integer)
    helpful: Mapped[Optional[bool]] = mapped_column(Boolean)
    correction: Mapped[Optional[str]] = mapped_column(Text)
    pattern_id: Mapped[Optional[str]] = mapped_column(String(32), index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
