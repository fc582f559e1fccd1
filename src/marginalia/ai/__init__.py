"""AI query pipeline: prompts, provider backends, caching and errors."""

from .ai_types import ChunkCallback, HistoryTurn, QueryRequest, QueryResult, Selection
from .cache import ResponseCache, ResponseCacheConfig, make_cache_key
from .client import ProviderAdapter
from .errors import (
    AuthError,
    ConfigError,
    NotFoundError,
    ProviderError,
    QueryError,
    QueryTimeoutError,
    RateLimitError,
)
from .pipeline import FormattedResponse, QueryPipeline, format_result

__all__ = [
    "AuthError",
    "ChunkCallback",
    "ConfigError",
    "FormattedResponse",
    "HistoryTurn",
    "NotFoundError",
    "ProviderAdapter",
    "ProviderError",
    "QueryError",
    "QueryPipeline",
    "QueryRequest",
    "QueryResult",
    "QueryTimeoutError",
    "RateLimitError",
    "ResponseCache",
    "ResponseCacheConfig",
    "Selection",
    "format_result",
    "make_cache_key",
]
