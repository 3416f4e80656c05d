"""Similarity search — query engine and query-embedding cache."""

from taskvec.search._engine import SimilaritySearchEngine, validate_search_request
from taskvec.search.cache import QueryEmbeddingCache

__all__ = [
    "QueryEmbeddingCache",
    "SimilaritySearchEngine",
    "validate_search_request",
]
