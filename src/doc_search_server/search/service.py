"""
Search Service

Orchestrates the search operations over the document store:

- vector_search:  nearest neighbours of the embedded query
- hybrid_search:  nearest neighbours re-ranked by vector + text relevance
- find_similar:   nearest neighbours of a stored document's own embedding
- text_search:    keyword-only match on title and content, newest first

The vector operations share the same dual-path shape: the managed index is raced
against a timeout, and on timeout or error the brute-force fallback scanner
runs with the same vector, filter and bounds. Ranking happens here, after
either backend, so the scoring formulas are identical on both paths. Callers
cannot tell which path produced a result.

The service is built once at startup and holds explicit references to its
store, embedding gateway, index manager and result cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from ..config import Settings
from ..core.errors import (
    DocumentNotFound,
    IndexLifecycleError,
    SearchFailed,
)
from .backends import (
    CandidateBackend,
    CandidateRequest,
    FallbackScanner,
    ManagedIndexBackend,
)
from .cache import ResultCache
from .index_manager import IndexManager
from .models import (
    HybridSearchOptions,
    IndexDescriptor,
    IndexStatus,
    ScoredDocument,
    SearchOptions,
    SearchResult,
    SearchStats,
    SimilarityMetric,
    StoredDocument,
)
from .similarity import hybrid_score, text_score
from .store import DocumentStore

if TYPE_CHECKING:
    from ..embeddings.embedder import EmbeddingGateway

logger = logging.getLogger("docsearch.service")


def descriptor_from_settings(cfg: Settings) -> IndexDescriptor:
    return IndexDescriptor(
        name=cfg.vector_index_name,
        vector_path=cfg.vector_path,
        dimensions=cfg.embedding_dimensions,
        similarity=SimilarityMetric(cfg.vector_similarity),
        filter_paths=tuple(cfg.vector_filter_paths),
    )


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SearchService:
    """
    Entry point of the search core.
    """

    def __init__(
        self,
        store: DocumentStore,
        embeddings: EmbeddingGateway,
        index_manager: IndexManager,
        descriptor: IndexDescriptor,
        result_cache: Optional[ResultCache] = None,
        search_timeout: float = 12.0,
        default_score_threshold: float = 0.7,
        keyword_fallback: bool = True,
        managed: Optional[CandidateBackend] = None,
        fallback: Optional[CandidateBackend] = None,
    ) -> None:
        """
        Parameters
        ----------
        store : DocumentStore
            Document store used for lookups, scans and statistics.

        embeddings : EmbeddingGateway
            Query vectorization.

        index_manager : IndexManager
            Lifecycle manager of the vector index named by ``descriptor``.

        descriptor : IndexDescriptor
            Desired definition of the managed vector index.

        result_cache : Optional[ResultCache]
            Cache of assembled results; None disables caching.

        search_timeout : float
            Budget in seconds for the managed index path. The embedding call
            has its own timeout and does not consume this budget.

        default_score_threshold : float
            Threshold applied by vector_search when the filter sets none.

        keyword_fallback : bool
            Run a keyword search when vector_search finds nothing.

        managed, fallback : Optional[CandidateBackend]
            Backend overrides; by default the managed index and the
            brute-force scanner over ``store``.
        """
        self._store = store
        self._embeddings = embeddings
        self._index_manager = index_manager
        self._descriptor = descriptor
        self._cache = result_cache
        self._search_timeout = search_timeout
        self._default_threshold = default_score_threshold
        self._keyword_fallback = keyword_fallback

        self._managed = managed or ManagedIndexBackend(
            store, index_manager, descriptor, server_timeout=search_timeout
        )
        self._fallback = fallback or FallbackScanner(store, descriptor)

    @classmethod
    def from_settings(
        cls,
        store: DocumentStore,
        embeddings: EmbeddingGateway,
        cfg: Settings,
        result_cache: Optional[ResultCache] = None,
    ) -> "SearchService":
        descriptor = descriptor_from_settings(cfg)
        index_manager = IndexManager(
            store,
            poll_interval=cfg.index_poll_interval_seconds,
            max_wait=cfg.index_max_wait_seconds,
        )
        return cls(
            store,
            embeddings,
            index_manager,
            descriptor,
            result_cache=result_cache,
            search_timeout=cfg.search_timeout_seconds,
            default_score_threshold=cfg.search_score_threshold,
            keyword_fallback=cfg.keyword_fallback_enabled,
        )

    @property
    def descriptor(self) -> IndexDescriptor:
        return self._descriptor

    @property
    def index_manager(self) -> IndexManager:
        return self._index_manager

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def vector_search(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
    ) -> List[SearchResult]:
        """
        Semantic search for ``query``.

        Results scoring below the filter's ``score_threshold`` (or the
        configured default when unset) are dropped. At most ``limit``
        results are returned, by descending score; ties keep store order.
        """
        options = options or SearchOptions()
        cache_key = ResultCache.make_key("vector", query, options)
        cached = await self._cache_get(cache_key)
        if cached is not None:
            return cached

        started = time.perf_counter()
        vector = await self._embeddings.embed(query)

        request = CandidateRequest(
            num_candidates=max(options.num_candidates, options.limit * 2),
            limit=options.limit,
            result_limit=options.limit,
            search_filter=options.filter,
        )
        candidates = await self._collect("vector", vector, request)

        threshold = self._threshold(options, self._default_threshold)
        results = [
            self._to_result(c.document, c.vector_score)
            for c in candidates
            if threshold is None or c.vector_score >= threshold
        ][: options.limit]

        if not results and self._keyword_fallback:
            logger.info("Vector search returned no results, falling back to keyword search")
            try:
                results = await self._keyword_results(query, options)
            except Exception as exc:
                logger.warning("Keyword fallback failed: %s", exc)

        logger.info(
            "Vector search completed: query=%r, results=%d, time=%.1fms",
            query,
            len(results),
            (time.perf_counter() - started) * 1000,
        )
        await self._cache_set(cache_key, results)
        return results

    async def hybrid_search(
        self,
        query: str,
        options: Optional[HybridSearchOptions] = None,
    ) -> List[SearchResult]:
        """
        Blend of vector similarity and keyword relevance.

        ``score = vector_score * vector_weight + max(text_score, 0) * text_weight``
        computed over the top ``limit * 2`` candidates by vector score,
        whichever backend produced them, then truncated to ``limit``.
        """
        options = options or HybridSearchOptions()
        cache_key = ResultCache.make_key("hybrid", query, options)
        cached = await self._cache_get(cache_key)
        if cached is not None:
            return cached

        started = time.perf_counter()
        vector = await self._embeddings.embed(query)

        request = CandidateRequest(
            num_candidates=max(options.num_candidates, options.limit * 2),
            limit=options.limit * 2,
            result_limit=options.limit,
            search_filter=options.filter,
        )
        candidates = await self._collect("hybrid", vector, request)
        # Both paths rescore the same pool: the top limit * 2 by vector score.
        candidates = candidates[: request.limit]

        rescored = []
        for candidate in candidates:
            doc = candidate.document
            relevance = text_score(query, doc.title, doc.content)
            score = hybrid_score(
                candidate.vector_score,
                relevance,
                vector_weight=options.vector_weight,
                text_weight=options.text_weight,
            )
            rescored.append((score, relevance, candidate))
        rescored.sort(key=lambda item: item[0], reverse=True)

        threshold = self._threshold(options, None)
        results = [
            self._to_result(
                candidate.document,
                score,
                {"vector_score": candidate.vector_score, "text_score": relevance},
            )
            for score, relevance, candidate in rescored
            if threshold is None or score >= threshold
        ][: options.limit]

        logger.info(
            "Hybrid search completed: query=%r, results=%d, time=%.1fms",
            query,
            len(results),
            (time.perf_counter() - started) * 1000,
        )
        await self._cache_set(cache_key, results)
        return results

    async def find_similar(
        self,
        document_id: str,
        options: Optional[SearchOptions] = None,
    ) -> List[SearchResult]:
        """
        Documents nearest to the stored embedding of ``document_id``.

        The source document is never part of the results.

        Raises
        ------
        DocumentNotFound
            If the document does not exist or has no usable embedding.
        """
        options = options or SearchOptions()
        cache_key = ResultCache.make_key("similar", document_id, options)
        cached = await self._cache_get(cache_key)
        if cached is not None:
            return cached

        try:
            source = await self._store.get_document(document_id)
        except Exception as exc:
            logger.error("Loading document '%s' failed: %s", document_id, exc)
            raise SearchFailed(f"Could not load document '{document_id}'") from exc

        if source is None:
            raise DocumentNotFound(document_id)
        if not source.embedding:
            raise DocumentNotFound(document_id, "has no embedding")
        if len(source.embedding) != self._descriptor.dimensions:
            raise DocumentNotFound(document_id, "has no usable embedding")

        request = CandidateRequest(
            num_candidates=max(options.num_candidates, options.limit * 2),
            limit=options.limit,
            result_limit=options.limit,
            search_filter=options.filter,
            exclude_id=document_id,
        )
        candidates = await self._collect("similar", source.embedding, request)

        threshold = self._threshold(options, None)
        results = [
            self._to_result(c.document, c.vector_score)
            for c in candidates
            if c.document.id != document_id
            and (threshold is None or c.vector_score >= threshold)
        ][: options.limit]

        logger.info(
            "Similar document search completed: document_id=%r, results=%d",
            document_id,
            len(results),
        )
        await self._cache_set(cache_key, results)
        return results

    async def text_search(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
    ) -> List[SearchResult]:
        """
        Keyword-only search: documents whose title or content contains
        ``query``, newest first. Needs neither embeddings nor the index.

        Each result is scored with the keyword relevance used by hybrid
        search; a threshold applies only when the filter sets one.
        """
        options = options or SearchOptions()
        cache_key = ResultCache.make_key("text", query, options)
        cached = await self._cache_get(cache_key)
        if cached is not None:
            return cached

        try:
            results = await self._keyword_results(query, options)
        except Exception as exc:
            logger.error("Keyword search failed: %s", exc)
            raise SearchFailed("text search failed") from exc

        logger.info("Keyword search completed: query=%r, results=%d", query, len(results))
        await self._cache_set(cache_key, results)
        return results

    async def get_search_stats(self) -> SearchStats:
        try:
            total = await self._store.count_documents()
            indexed = await self._store.count_documents(embedded_only=True)
            status = await self._index_manager.status(self._descriptor.name)
        except Exception as exc:
            logger.error("Collecting search stats failed: %s", exc)
            raise SearchFailed("Could not collect search statistics") from exc

        return SearchStats(
            total_documents=total,
            indexed_documents=indexed,
            index_status=status,
        )

    async def ensure_index(self) -> IndexStatus:
        """
        Startup hook: make sure the managed index exists and is queryable.

        Lifecycle failures are logged and never raised; search then runs in
        fallback-only mode until the index becomes queryable.
        """
        name = self._descriptor.name
        try:
            return await self._index_manager.ensure_index(self._descriptor)
        except IndexLifecycleError as exc:
            logger.warning("Vector index '%s' not ready at startup: %s", name, exc)
        except Exception:
            logger.exception("Setting up vector index '%s' failed", name)
        return self._index_manager.known_status(name)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _collect(
        self,
        operation: str,
        vector: Sequence[float],
        request: CandidateRequest,
    ) -> List[ScoredDocument]:
        """
        Race the managed backend against the search timeout, falling back
        to the scanner on timeout or error. The fallback itself is not raced.
        """
        try:
            return await asyncio.wait_for(
                self._managed.candidates(vector, request),
                timeout=self._search_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "%s search: managed index timed out after %gs, using fallback scan",
                operation,
                self._search_timeout,
            )
        except Exception as exc:
            logger.warning(
                "%s search: managed index failed (%s), using fallback scan",
                operation,
                exc,
            )

        try:
            return await self._fallback.candidates(vector, request)
        except Exception as exc:
            logger.error("%s search: fallback scan failed: %s", operation, exc)
            raise SearchFailed(f"{operation} search failed") from exc

    async def _keyword_results(
        self,
        query: str,
        options: SearchOptions,
    ) -> List[SearchResult]:
        documents = await self._store.keyword_search(query, options.filter, options.limit)
        threshold = self._threshold(options, None)
        results = []
        for doc in documents:
            relevance = text_score(query, doc.title, doc.content)
            if threshold is not None and relevance < threshold:
                continue
            results.append(self._to_result(doc, relevance, {"match": "keyword"}))
        return results[: options.limit]

    @staticmethod
    def _threshold(options: SearchOptions, default: Optional[float]) -> Optional[float]:
        if options.filter is not None and options.filter.score_threshold is not None:
            return options.filter.score_threshold
        return default

    @staticmethod
    def _to_result(
        doc: StoredDocument,
        score: float,
        extra: Optional[Dict[str, Any]] = None,
    ) -> SearchResult:
        metadata: Dict[str, Any] = dict(doc.metadata or {})
        metadata.update(
            user_id=doc.user_id,
            file_type=doc.file_type,
            created_at=_isoformat(doc.created_at),
            updated_at=_isoformat(doc.updated_at),
        )
        if extra:
            metadata.update(extra)
        return SearchResult(
            id=doc.id,
            title=doc.title or "Untitled",
            content=doc.content or "",
            score=float(score),
            metadata=metadata,
        )

    async def _cache_get(self, key: str) -> Optional[List[SearchResult]]:
        if self._cache is None:
            return None
        return await self._cache.get(key)

    async def _cache_set(self, key: str, results: List[SearchResult]) -> None:
        if self._cache is not None:
            await self._cache.set(key, results)
