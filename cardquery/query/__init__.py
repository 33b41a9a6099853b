"""Natural-language query pipeline: extraction, intent, decomposition, execution."""

from .analytics import AnalyticsSink, AnalyticsSummary, ProblemPattern, QueryAnalytics
from .decomposer import QueryDecomposer
from .entity_extractor import EntityExtractor
from .errors import (
    ExecutionError,
    ExternalServiceFailure,
    ExtractionAmbiguity,
    InvalidQueryShape,
    QueryError,
)
from .executor import QueryExecutor
from .intent_classifier import IntentClassifier, LLMFallbackClassifier
from .pattern_learner import PatternLearner
from .pipeline import QueryPipeline, build_pipeline
from .types import (
    ExecutionResult,
    ExtractedEntity,
    FeedbackRecord,
    IntentMatch,
    QueryResponse,
    StructuredQuery,
)

__all__ = [
    "AnalyticsSink",
    "AnalyticsSummary",
    "EntityExtractor",
    "ExecutionError",
    "ExecutionResult",
    "ExternalServiceFailure",
    "ExtractedEntity",
    "ExtractionAmbiguity",
    "FeedbackRecord",
    "IntentClassifier",
    "IntentMatch",
    "InvalidQueryShape",
    "LLMFallbackClassifier",
    "PatternLearner",
    "ProblemPattern",
    "QueryAnalytics",
    "QueryDecomposer",
    "QueryError",
    "QueryExecutor",
    "QueryPipeline",
    "QueryResponse",
    "StructuredQuery",
    "build_pipeline",
]
