import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import pytest

from doc_search_server.search.index_manager import IndexManager
from doc_search_server.search.models import (
    IndexDescriptor,
    IndexInfo,
    IndexStatus,
    ScoredDocument,
    SearchFilter,
    SimilarityMetric,
    StoredDocument,
)
from doc_search_server.search.service import SearchService
from doc_search_server.search.similarity import similarity_for
from doc_search_server.search.store import DocumentStore


# ---------------------------------------------------------------------
# Test Doubles
# ---------------------------------------------------------------------

class InMemoryDocumentStore(DocumentStore):
    """
    DocumentStore double with a simulated index build.

    A created index stays BUILDING for ``polls_until_ready`` status reads,
    then turns READY (or FAILED when ``build_fails`` is set). The
    ``*_error`` and ``knn_delay`` attributes inject failures.
    """

    def __init__(
        self,
        documents: Sequence[StoredDocument] = (),
        polls_until_ready: int = 0,
        build_fails: bool = False,
    ):
        self.documents: Dict[str, StoredDocument] = {d.id: d for d in documents}
        self.indexes: Dict[str, IndexInfo] = {}
        self.polls_until_ready = polls_until_ready
        self.build_fails = build_fails

        self.knn_delay = 0.0
        self.knn_error: Optional[Exception] = None
        self.scan_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None
        self.get_error: Optional[Exception] = None
        self.keyword_error: Optional[Exception] = None

        self.create_calls = 0
        self.update_calls = 0
        self.knn_calls: List[dict] = []
        self.scan_calls: List[dict] = []
        self.keyword_calls: List[str] = []

        self._definitions: Dict[str, dict] = {}
        self._pending: Dict[str, int] = {}

    # Seeding helpers

    def add(self, doc: StoredDocument) -> None:
        self.documents[doc.id] = doc

    def seed_index(
        self,
        descriptor: IndexDescriptor,
        status: IndexStatus = IndexStatus.READY,
        definition: Optional[dict] = None,
    ) -> None:
        definition = definition if definition is not None else descriptor.definition()
        self._definitions[descriptor.name] = definition
        self.indexes[descriptor.name] = IndexInfo(descriptor.name, status, definition)

    # Documents

    @staticmethod
    def _matches(
        doc: StoredDocument,
        search_filter: Optional[SearchFilter],
        exclude_id: Optional[str],
        require_embedding: bool = True,
    ) -> bool:
        if (require_embedding and doc.embedding is None) or doc.id == exclude_id:
            return False
        if search_filter is None:
            return True
        if search_filter.user_id is not None and doc.user_id != search_filter.user_id:
            return False
        if search_filter.file_type_in and doc.file_type not in search_filter.file_type_in:
            return False
        if search_filter.created_from and (
            doc.created_at is None or doc.created_at < search_filter.created_from
        ):
            return False
        if search_filter.created_to and (
            doc.created_at is None or doc.created_at > search_filter.created_to
        ):
            return False
        return True

    async def get_document(self, document_id):
        if self.get_error is not None:
            raise self.get_error
        return self.documents.get(document_id)

    async def scan_documents(self, search_filter, limit, exclude_id=None):
        self.scan_calls.append({"limit": limit, "exclude_id": exclude_id})
        if self.scan_error is not None:
            raise self.scan_error
        matching = [
            d for d in self.documents.values()
            if self._matches(d, search_filter, exclude_id)
        ]
        return matching[:limit]

    async def nearest_neighbors(
        self,
        vector,
        index,
        num_candidates,
        limit,
        search_filter=None,
        exclude_id=None,
        timeout=None,
    ):
        self.knn_calls.append(
            {"num_candidates": num_candidates, "limit": limit, "exclude_id": exclude_id}
        )
        if self.knn_delay:
            await asyncio.sleep(self.knn_delay)
        if self.knn_error is not None:
            raise self.knn_error

        similarity = similarity_for(index.similarity)
        scored = [
            ScoredDocument(d, similarity(vector, d.embedding))
            for d in self.documents.values()
            if self._matches(d, search_filter, exclude_id)
            and len(d.embedding) == index.dimensions
        ]
        scored.sort(key=lambda c: c.vector_score, reverse=True)
        return scored[:limit]

    async def keyword_search(self, query, search_filter, limit):
        self.keyword_calls.append(query)
        if self.keyword_error is not None:
            raise self.keyword_error
        needle = query.strip().lower()
        if not needle:
            return []
        matching = [
            d for d in self.documents.values()
            if self._matches(d, search_filter, None, require_embedding=False)
            and (needle in d.title.lower() or needle in d.content.lower())
        ]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        matching.sort(key=lambda d: d.created_at or epoch, reverse=True)
        return matching[:limit]

    async def count_documents(self, embedded_only=False):
        if embedded_only:
            return sum(1 for d in self.documents.values() if d.embedding is not None)
        return len(self.documents)

    # Indexes

    async def list_indexes(self):
        found = []
        for name in list(self.indexes):
            info = await self.get_index(name)
            if info is not None:
                found.append(info)
        return found

    async def get_index(self, name):
        info = self.indexes.get(name)
        if info is None or info.status is not IndexStatus.BUILDING:
            return info

        remaining = self._pending.get(name, 0)
        if remaining > 0:
            self._pending[name] = remaining - 1
            return info

        final = IndexStatus.FAILED if self.build_fails else IndexStatus.READY
        info = IndexInfo(name, final, self._definitions.get(name))
        self.indexes[name] = info
        return info

    async def create_index(self, descriptor):
        self.create_calls += 1
        self._definitions[descriptor.name] = descriptor.definition()
        self._pending[descriptor.name] = self.polls_until_ready
        self.indexes[descriptor.name] = IndexInfo(descriptor.name, IndexStatus.BUILDING)

    async def update_index(self, descriptor):
        self.update_calls += 1
        if self.update_error is not None:
            raise self.update_error
        self._definitions[descriptor.name] = descriptor.definition()
        current = self.indexes[descriptor.name]
        self.indexes[descriptor.name] = IndexInfo(
            descriptor.name, current.status, descriptor.definition()
        )

    async def drop_index(self, name):
        self.indexes.pop(name, None)
        self._definitions.pop(name, None)


class FakeEmbeddings:
    """
    Gateway double mapping known texts to fixed vectors.
    """

    def __init__(self, vectors: Dict[str, List[float]], default: Optional[List[float]] = None):
        self.vectors = vectors
        self.default = default
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if text in self.vectors:
            return self.vectors[text]
        if self.default is None:
            raise KeyError(text)
        return self.default


def make_doc(doc_id: str, embedding, **kwargs) -> StoredDocument:
    kwargs.setdefault("title", f"Document {doc_id}")
    kwargs.setdefault("content", f"Content of {doc_id}")
    kwargs.setdefault("user_id", "user-1")
    kwargs.setdefault("file_type", "pdf")
    kwargs.setdefault("created_at", datetime(2024, 1, 1, tzinfo=timezone.utc))
    return StoredDocument(id=doc_id, embedding=embedding, **kwargs)


def build_service(
    store: InMemoryDocumentStore,
    embeddings: FakeEmbeddings,
    descriptor: IndexDescriptor,
    **kwargs,
) -> SearchService:
    manager = IndexManager(store, poll_interval=0.001, max_wait=0.05)
    kwargs.setdefault("search_timeout", 0.5)
    return SearchService(store, embeddings, manager, descriptor, **kwargs)


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def descriptor():
    return IndexDescriptor(
        name="vector_search_index",
        dimensions=2,
        similarity=SimilarityMetric.COSINE,
        filter_paths=("user_id", "file_type"),
    )


@pytest.fixture
def three_docs():
    return [
        make_doc("doc-a", [1.0, 0.0]),
        make_doc("doc-b", [0.0, 1.0]),
        make_doc("doc-c", [0.9, 0.1]),
    ]


@pytest.fixture
def store(three_docs):
    return InMemoryDocumentStore(three_docs)


@pytest.fixture
def embeddings():
    return FakeEmbeddings({"east": [1.0, 0.0], "north": [0.0, 1.0]}, default=[1.0, 0.0])


@pytest.fixture
def ready_store(store, descriptor):
    store.seed_index(descriptor, IndexStatus.READY)
    return store
