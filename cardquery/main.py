"""FastAPI application instance and startup hooks."""
from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cardquery.core import get_logger, get_settings
from cardquery.db import create_schema, create_sync_engine, get_sessionmaker, session_scope
from cardquery.query.errors import QueryError
from cardquery.query.pipeline import QueryPipeline, build_pipeline
from cardquery.repositories import PatternRepository, SqlAnalyticsSink
from cardquery.web import configure_pipeline, router

LOGGER = get_logger(__name__)


def create_app(pipeline: Optional[QueryPipeline] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Without an explicit ``pipeline`` one is built from settings; when a
    database URL is configured, analytics are persisted and learned patterns
    are restored on startup and saved on shutdown.
    """

    app = FastAPI(title="Card Query Engine", version="0.1.0")
    settings = get_settings()
    session_factory = None

    if pipeline is None:
        sinks = []
        if settings.database_url:
            engine = create_sync_engine(settings.database_url)
            create_schema(engine)
            session_factory = get_sessionmaker(engine=engine)
            sinks.append(SqlAnalyticsSink(session_factory))
        pipeline = build_pipeline(settings=settings, sinks=sinks)

    configure_pipeline(pipeline)
    app.include_router(router)

    @app.exception_handler(QueryError)
    async def query_error_handler(request: Request, exc: QueryError) -> JSONResponse:
        LOGGER.warning("Query error on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=422,
            content={"detail": exc.user_message, "failure_kind": exc.failure_kind},
        )

    if session_factory is not None and pipeline.learner is not None:
        learner = pipeline.learner

        @app.on_event("startup")
        def restore_patterns() -> None:
            with session_scope(session_factory) as session:
                PatternRepository(session).restore_learner(learner)

        @app.on_event("shutdown")
        def save_patterns() -> None:
            with session_scope(session_factory) as session:
                PatternRepository(session).save_learner(learner)

    LOGGER.info("FastAPI application initialised")
    return app
