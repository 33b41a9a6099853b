"""
FastAPI router for card queries.

The integrating application provides the pipeline with
``configure_pipeline``; a default one is built lazily otherwise.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from cardquery.core.log import get_logger
from cardquery.query.pipeline import QueryPipeline, build_pipeline
from cardquery.schemas.cards import CardRecord

LOGGER = get_logger(__name__)

router = APIRouter(prefix="/cards", tags=["Card queries"])

_pipeline: Optional[QueryPipeline] = None


class CardQueryRequest(BaseModel):
    """Request model for a card question"""
    question: str = Field(min_length=1)
    cards: List[CardRecord] = Field(default_factory=list)
    user_id: Optional[str] = None
    as_of: Optional[date] = None


class CardQueryResponse(BaseModel):
    """Response model for a card question"""
    answered: bool
    message: Optional[str] = None
    failure_kind: Optional[str] = None
    intent: dict[str, Any]
    entities: List[dict[str, Any]] = Field(default_factory=list)
    structured_query: Optional[dict[str, Any]] = None
    rows: List[dict[str, Any]] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    row_count: int = 0
    truncated: bool = False
    record_id: Optional[str] = None


class FeedbackRequest(BaseModel):
    """Explicit rating/helpful flag, or an implicit behaviour signal"""
    record_id: str = Field(min_length=1)
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    helpful: Optional[bool] = None
    signal: Optional[Literal["abandonment", "correction", "reformulation", "navigation", "timeout"]] = None
    correction: Optional[str] = None


def configure_pipeline(pipeline: Optional[QueryPipeline]) -> None:
    """Install the pipeline the routes use (``None`` resets to the default)."""
    global _pipeline
    _pipeline = pipeline


def get_pipeline() -> QueryPipeline:
    global _pipeline
    if _pipeline is None:
        LOGGER.info("Building default query pipeline")
        _pipeline = build_pipeline()
    return _pipeline


@router.post("/query", response_model=CardQueryResponse)
async def card_query(payload: CardQueryRequest, pipeline: QueryPipeline = Depends(get_pipeline)):
    """
    Answer a natural-language question about the supplied cards.

    Clarifications come back with ``answered=false`` and a ``message``;
    query errors raised while executing are mapped to 422 by the app.
    """
    response = await pipeline.process_query(
        payload.question,
        payload.cards,
        user_id=payload.user_id,
        as_of=payload.as_of,
    )
    result = response.execution_result.as_dict() if response.execution_result else {}
    return CardQueryResponse(
        answered=response.answered,
        message=response.message,
        failure_kind=response.failure_kind,
        intent=response.intent_match.as_dict(),
        entities=[entity.as_dict() for entity in response.entities],
        structured_query=response.structured_query.as_dict() if response.structured_query else None,
        rows=result.get("rows", []),
        insights=result.get("insights", []),
        row_count=result.get("row_count", 0),
        truncated=result.get("truncated", False),
        record_id=response.record_id,
    )


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "pipeline_initialized": _pipeline is not None,
        "intent_store_seeded": bool(_pipeline and _pipeline.classifier.seeded),
        "learned_patterns": len(_pipeline.learner) if _pipeline and _pipeline.learner else 0,
    }


@router.get("/analytics")
async def analytics_summary(
    user_id: Optional[str] = None,
    days: Optional[int] = Query(default=None, ge=1),
    pipeline: QueryPipeline = Depends(get_pipeline),
):
    """Aggregate query statistics since startup, optionally for one user or the last ``days``."""
    if pipeline.analytics is None:
        return {"enabled": False}
    since = datetime.now(timezone.utc) - timedelta(days=days) if days else None
    return {"enabled": True, **pipeline.analytics.stats(user_id=user_id, since=since).as_dict()}


@router.post("/feedback")
async def card_feedback(payload: FeedbackRequest, pipeline: QueryPipeline = Depends(get_pipeline)):
    """Record feedback on an earlier answer."""
    try:
        feedback = pipeline.record_feedback(
            payload.record_id,
            rating=payload.rating,
            helpful=payload.helpful,
            signal=payload.signal,
            correction=payload.correction,
        )
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return feedback.as_dict()


@router.get("/analytics/problem-patterns")
async def problem_patterns(pipeline: QueryPipeline = Depends(get_pipeline)):
    """Learned patterns that are used often but rarely answer well."""
    if pipeline.analytics is None:
        return {"enabled": False, "patterns": []}
    options = pipeline.options
    problems = pipeline.analytics.identify_problem_patterns(
        threshold=options.problem_success_rate, min_uses=options.problem_min_uses
    )
    return {"enabled": True, "patterns": [problem.as_dict() for problem in problems]}
