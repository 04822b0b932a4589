"""
Search Package

Vector, hybrid and find-similar search over the document store, with
managed-index lifecycle handling and a brute-force fallback path.
"""

from .cache import CacheBackend, InMemoryTTLCache, ResultCache
from .index_manager import IndexManager
from .models import (
    HybridSearchOptions,
    IndexDescriptor,
    IndexInfo,
    IndexStatus,
    SearchFilter,
    SearchOptions,
    SearchResult,
    SearchStats,
    SimilarityMetric,
    StoredDocument,
)
from .service import SearchService, descriptor_from_settings
from .store import DocumentStore

__all__ = [
    "CacheBackend",
    "InMemoryTTLCache",
    "ResultCache",
    "IndexManager",
    "HybridSearchOptions",
    "IndexDescriptor",
    "IndexInfo",
    "IndexStatus",
    "SearchFilter",
    "SearchOptions",
    "SearchResult",
    "SearchStats",
    "SimilarityMetric",
    "StoredDocument",
    "SearchService",
    "descriptor_from_settings",
    "DocumentStore",
]
