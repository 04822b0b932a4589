"""
Document Store Contract

The search core talks to persistence only through this interface. The
production implementation is `db.document_store.PgDocumentStore`; tests use
an in-memory double.

The store is read-only from the search core's perspective except for index
definitions, which only the index lifecycle manager writes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from .models import (
    IndexDescriptor,
    IndexInfo,
    ScoredDocument,
    SearchFilter,
    StoredDocument,
)


class DocumentStore(ABC):

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[StoredDocument]:
        """Return one document, or None if it does not exist."""

    @abstractmethod
    async def scan_documents(
        self,
        search_filter: Optional[SearchFilter],
        limit: int,
        exclude_id: Optional[str] = None,
    ) -> List[StoredDocument]:
        """
        Return up to ``limit`` documents that have an embedding and match the
        filter, in natural store order.
        """

    @abstractmethod
    async def nearest_neighbors(
        self,
        vector: Sequence[float],
        index: IndexDescriptor,
        num_candidates: int,
        limit: int,
        search_filter: Optional[SearchFilter] = None,
        exclude_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[ScoredDocument]:
        """
        Approximate nearest-neighbour query through the named index.

        Returns at most ``limit`` documents ordered by descending score. The
        ``timeout`` is a server-side bound; callers still enforce their own.
        """

    @abstractmethod
    async def keyword_search(
        self,
        query: str,
        search_filter: Optional[SearchFilter],
        limit: int,
    ) -> List[StoredDocument]:
        """
        Return up to ``limit`` documents whose title or content contains
        ``query`` (case-insensitive), newest first. Documents without an
        embedding are included.
        """

    @abstractmethod
    async def count_documents(self, embedded_only: bool = False) -> int:
        """Count all documents, or only those carrying an embedding."""

    # ------------------------------------------------------------------
    # Index Management
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_indexes(self) -> List[IndexInfo]:
        """List the vector indexes attached to the document collection."""

    @abstractmethod
    async def get_index(self, name: str) -> Optional[IndexInfo]:
        """Return the named index, or None if it does not exist."""

    @abstractmethod
    async def create_index(self, descriptor: IndexDescriptor) -> None:
        """
        Start building an index. Returns once the build has been submitted;
        creating an index that already exists is a no-op.
        """

    @abstractmethod
    async def update_index(self, descriptor: IndexDescriptor) -> None:
        """Bring an existing index in line with ``descriptor``."""

    @abstractmethod
    async def drop_index(self, name: str) -> None:
        """Drop the named index if it exists."""
