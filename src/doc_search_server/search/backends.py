"""
Candidate Backends

Two interchangeable ways to turn a query vector into scored candidates:

- ManagedIndexBackend: the store's approximate nearest-neighbour index.
- FallbackScanner: brute-force scoring over a bounded scan of the store.

The executor picks one per call by racing the managed backend against a
timeout; everything downstream of a backend is store-agnostic.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..core.errors import DimensionMismatch, ManagedSearchFailed
from .index_manager import IndexManager
from .models import IndexDescriptor, IndexStatus, ScoredDocument, SearchFilter
from .similarity import similarity_for
from .store import DocumentStore

logger = logging.getLogger("docsearch.backends")

FALLBACK_SCAN_FACTOR = 5


@dataclass(frozen=True)
class CandidateRequest:
    """
    Bounds and filters for one candidate lookup.

    ``limit`` is the number of candidates the operation wants back from the
    managed index; ``result_limit`` is the final number of results the
    operation returns.
    """
    num_candidates: int
    limit: int
    result_limit: int
    search_filter: Optional[SearchFilter] = None
    exclude_id: Optional[str] = None


class CandidateBackend(ABC):

    @abstractmethod
    async def candidates(
        self,
        vector: Sequence[float],
        request: CandidateRequest,
    ) -> List[ScoredDocument]:
        """Return candidates ordered by descending vector score."""


class ManagedIndexBackend(CandidateBackend):
    """
    Nearest-neighbour lookup through the managed vector index.

    Fails fast with ManagedSearchFailed when the index is not queryable.
    """

    def __init__(
        self,
        store: DocumentStore,
        index_manager: IndexManager,
        descriptor: IndexDescriptor,
        server_timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._index_manager = index_manager
        self._descriptor = descriptor
        self._server_timeout = server_timeout

    async def candidates(
        self,
        vector: Sequence[float],
        request: CandidateRequest,
    ) -> List[ScoredDocument]:
        name = self._descriptor.name
        if not self._index_manager.is_queryable(name):
            current = await self._index_manager.status(name)
            if current is not IndexStatus.READY:
                raise ManagedSearchFailed(
                    f"Vector index '{name}' is not queryable ({current.value})"
                )

        try:
            return await self._store.nearest_neighbors(
                vector,
                self._descriptor,
                num_candidates=request.num_candidates,
                limit=request.limit,
                search_filter=request.search_filter,
                exclude_id=request.exclude_id,
                timeout=self._server_timeout,
            )
        except ManagedSearchFailed:
            raise
        except Exception as exc:
            raise ManagedSearchFailed(
                f"Managed vector query failed: {type(exc).__name__}: {exc}"
            ) from exc


class FallbackScanner(CandidateBackend):
    """
    Brute-force scorer used when the managed path fails or times out.

    Scans up to ``max(num_candidates, result_limit * 5)`` matching documents
    and scores each one in-process. Documents whose embedding length differs
    from the index dimensionality are skipped. The whole scanned pool is
    returned, sorted (stable) by descending score; the caller truncates after
    its own ranking.
    """

    def __init__(self, store: DocumentStore, descriptor: IndexDescriptor) -> None:
        self._store = store
        self._dimensions = descriptor.dimensions
        self._similarity = similarity_for(descriptor.similarity)

    @staticmethod
    def scan_limit(request: CandidateRequest) -> int:
        return max(request.num_candidates, request.result_limit * FALLBACK_SCAN_FACTOR)

    async def candidates(
        self,
        vector: Sequence[float],
        request: CandidateRequest,
    ) -> List[ScoredDocument]:
        if len(vector) != self._dimensions:
            raise DimensionMismatch(len(vector), self._dimensions)

        documents = await self._store.scan_documents(
            request.search_filter,
            limit=self.scan_limit(request),
            exclude_id=request.exclude_id,
        )

        scored: List[ScoredDocument] = []
        skipped = 0
        for doc in documents:
            if doc.id == request.exclude_id:
                continue
            if doc.embedding is None or len(doc.embedding) != self._dimensions:
                skipped += 1
                continue
            scored.append(ScoredDocument(doc, self._similarity(vector, doc.embedding)))

        if skipped:
            logger.warning(
                "Fallback scan skipped %d document(s) without a %d-dimension embedding",
                skipped,
                self._dimensions,
            )

        scored.sort(key=lambda c: c.vector_score, reverse=True)
        return scored
