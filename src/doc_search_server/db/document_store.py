"""
PostgreSQL Document Store

PostgreSQL + pgvector implementation of the search core's DocumentStore.

Managed Index
-------------
- The vector index is an HNSW index on the embedding column, built with
  CREATE INDEX CONCURRENTLY in a background task so creation returns at once.
- Filter paths get companion btree indexes named ``<index>__<column>``.
- The index definition is stored as JSON in the index comment and read back
  to detect definition drift.
- Status comes from the catalog: a valid index is READY, an invalid one with
  a row in pg_stat_progress_create_index is BUILDING, any other invalid one
  is FAILED.
- ``num_candidates`` maps to ``hnsw.ef_search`` for the query transaction,
  and the caller's timeout to ``statement_timeout``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import Select, func, or_, select, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..search.models import (
    IndexDescriptor,
    IndexInfo,
    IndexStatus,
    ScoredDocument,
    SearchFilter,
    SimilarityMetric,
    StoredDocument,
)
from ..search.store import DocumentStore
from .models import Document

logger = logging.getLogger("docsearch.store")

MAX_EF_SEARCH = 1000

_OPERATOR_CLASSES = {
    SimilarityMetric.COSINE: "vector_cosine_ops",
    SimilarityMetric.EUCLIDEAN: "vector_l2_ops",
    SimilarityMetric.DOT_PRODUCT: "vector_ip_ops",
}

_FILTER_COLUMNS = {
    "user_id": Document.user_id,
    "file_type": Document.file_type,
    "created_at": Document.created_at,
}

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

_INDEX_CATALOG_SQL = """
SELECT c.relname AS name,
       i.indisvalid AS valid,
       (p.index_relid IS NOT NULL) AS building,
       obj_description(c.oid, 'pg_class') AS definition
FROM pg_index i
JOIN pg_class c ON c.oid = i.indexrelid
JOIN pg_class t ON t.oid = i.indrelid
JOIN pg_am am ON am.oid = c.relam
LEFT JOIN pg_stat_progress_create_index p ON p.index_relid = c.oid
WHERE t.relname = :table AND am.amname = 'hnsw'
"""


# ---------------------------------------------------------------------
# Statement Builders
# ---------------------------------------------------------------------

def _identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def filter_clauses(
    search_filter: Optional[SearchFilter],
    exclude_id: Optional[str] = None,
    require_embedding: bool = True,
) -> List[Any]:
    """
    Translate a SearchFilter into WHERE clauses. Unless
    ``require_embedding`` is False, only documents with an embedding match.
    """
    clauses: List[Any] = []
    if require_embedding:
        clauses.append(Document.embedding.is_not(None))
    if search_filter is not None:
        if search_filter.user_id is not None:
            clauses.append(Document.user_id == search_filter.user_id)
        if search_filter.file_type_in:
            clauses.append(Document.file_type.in_(list(search_filter.file_type_in)))
        if search_filter.created_from is not None:
            clauses.append(Document.created_at >= search_filter.created_from)
        if search_filter.created_to is not None:
            clauses.append(Document.created_at <= search_filter.created_to)
    if exclude_id is not None:
        clauses.append(Document.id != exclude_id)
    return clauses


def _distance_and_score(metric: SimilarityMetric, vector: Sequence[float]):
    """
    Return (distance, score) expressions. Ordering by distance lets the
    HNSW index serve the query; scores match search.similarity.
    """
    if metric is SimilarityMetric.COSINE:
        distance = Document.embedding.cosine_distance(vector)
        return distance, 1 - distance
    if metric is SimilarityMetric.EUCLIDEAN:
        distance = Document.embedding.l2_distance(vector)
        return distance, 1.0 / (1.0 + distance)
    # max_inner_product is the negated inner product
    distance = Document.embedding.max_inner_product(vector)
    return distance, (1 - distance) / 2.0


def build_knn_statement(
    vector: Sequence[float],
    metric: SimilarityMetric,
    limit: int,
    search_filter: Optional[SearchFilter] = None,
    exclude_id: Optional[str] = None,
) -> Select:
    distance, score = _distance_and_score(SimilarityMetric(metric), list(vector))
    return (
        select(
            Document.id,
            Document.title,
            Document.content,
            Document.user_id,
            Document.file_type,
            Document.created_at,
            Document.updated_at,
            Document.metadata_.label("doc_metadata"),
            score.label("score"),
        )
        .where(*filter_clauses(search_filter, exclude_id))
        .order_by(distance)
        .limit(limit)
    )


def build_scan_statement(
    search_filter: Optional[SearchFilter],
    limit: int,
    exclude_id: Optional[str] = None,
) -> Select:
    return select(Document).where(*filter_clauses(search_filter, exclude_id)).limit(limit)


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def build_keyword_statement(
    query: str,
    search_filter: Optional[SearchFilter],
    limit: int,
) -> Select:
    pattern = _like_pattern(query.strip())
    return (
        select(Document)
        .where(
            or_(
                Document.title.ilike(pattern, escape="\\"),
                Document.content.ilike(pattern, escape="\\"),
            ),
            *filter_clauses(search_filter, require_embedding=False),
        )
        .order_by(Document.created_at.desc())
        .limit(limit)
    )


def status_from_catalog(valid: bool, building: bool) -> IndexStatus:
    if valid:
        return IndexStatus.READY
    if building:
        return IndexStatus.BUILDING
    return IndexStatus.FAILED


def _parse_definition(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        definition = json.loads(raw)
    except ValueError:
        return None
    return definition if isinstance(definition, dict) else None


def _as_floats(value: Any) -> Optional[List[float]]:
    if value is None:
        return None
    if isinstance(value, str):
        value = json.loads(value)
    return [float(x) for x in value]


def _to_stored(doc: Document) -> StoredDocument:
    return StoredDocument(
        id=doc.id,
        title=doc.title or "",
        content=doc.content or "",
        user_id=doc.user_id,
        file_type=doc.file_type,
        embedding=_as_floats(doc.embedding),
        created_at=doc.created_at,
        updated_at=doc.updated_at,
        metadata=dict(doc.metadata_ or {}),
    )


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

class PgDocumentStore(DocumentStore):
    """
    DocumentStore backed by the ``documents`` table.

    Each operation opens its own session, so one store instance is safe to
    share across concurrent requests.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        hnsw_m: int = 16,
        hnsw_ef_construction: int = 64,
    ) -> None:
        """
        Parameters
        ----------
        engine : AsyncEngine
            Engine used for DDL, which must run outside a transaction.

        session_factory : Optional[async_sessionmaker]
            Factory for query sessions. Defaults to one bound to ``engine``.

        hnsw_m, hnsw_ef_construction : int
            HNSW build parameters for newly created indexes.
        """
        self._engine = engine
        self._session_factory = session_factory or async_sessionmaker(
            bind=engine, class_=AsyncSession, expire_on_commit=False
        )
        self._hnsw_m = hnsw_m
        self._hnsw_ef_construction = hnsw_ef_construction
        self._table = Document.__tablename__
        self._builds: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get_document(self, document_id: str) -> Optional[StoredDocument]:
        async with self._session_factory() as session:
            doc = await session.get(Document, document_id)
            return _to_stored(doc) if doc is not None else None

    async def scan_documents(
        self,
        search_filter: Optional[SearchFilter],
        limit: int,
        exclude_id: Optional[str] = None,
    ) -> List[StoredDocument]:
        stmt = build_scan_statement(search_filter, limit, exclude_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_stored(doc) for doc in result.scalars().all()]

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
        stmt = build_knn_statement(vector, index.similarity, limit, search_filter, exclude_id)
        ef_search = min(max(int(num_candidates), int(limit)), MAX_EF_SEARCH)

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(text(f"SET LOCAL hnsw.ef_search = {ef_search}"))
                if timeout is not None:
                    timeout_ms = max(1, int(timeout * 1000))
                    await session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
                rows = (await session.execute(stmt)).all()

        return [
            ScoredDocument(
                StoredDocument(
                    id=row.id,
                    title=row.title or "",
                    content=row.content or "",
                    user_id=row.user_id,
                    file_type=row.file_type,
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                    metadata=dict(row.doc_metadata or {}),
                ),
                float(row.score),
            )
            for row in rows
        ]

    async def keyword_search(
        self,
        query: str,
        search_filter: Optional[SearchFilter],
        limit: int,
    ) -> List[StoredDocument]:
        if not query.strip():
            return []
        stmt = build_keyword_statement(query, search_filter, limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_stored(doc) for doc in result.scalars().all()]

    async def count_documents(self, embedded_only: bool = False) -> int:
        stmt = select(func.count()).select_from(Document)
        if embedded_only:
            stmt = stmt.where(Document.embedding.is_not(None))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar() or 0

    # ------------------------------------------------------------------
    # Index Management
    # ------------------------------------------------------------------

    async def list_indexes(self) -> List[IndexInfo]:
        return await self._query_indexes()

    async def get_index(self, name: str) -> Optional[IndexInfo]:
        found = await self._query_indexes(name)
        return found[0] if found else None

    async def create_index(self, descriptor: IndexDescriptor) -> None:
        name = _identifier(descriptor.name)
        running = self._builds.get(name)
        if running is not None and not running.done():
            return

        statements = self._create_statements(descriptor)
        task = asyncio.create_task(self._execute_ddl(statements))
        self._builds[name] = task
        task.add_done_callback(lambda t: self._on_build_done(name, t))

    async def update_index(self, descriptor: IndexDescriptor) -> None:
        """
        Rebuild when the vector part of the definition changed; otherwise add
        missing filter indexes and refresh the stored definition.
        """
        current = await self.get_index(descriptor.name)
        if current is None:
            await self.create_index(descriptor)
            return

        stored = current.definition or {}
        wanted = descriptor.definition()
        vector_keys = ("vector_path", "dimensions", "similarity")
        if any(stored.get(k) != wanted[k] for k in vector_keys):
            logger.info("Rebuilding vector index '%s' for new definition", descriptor.name)
            await self._execute_ddl(
                [f'DROP INDEX CONCURRENTLY IF EXISTS "{_identifier(descriptor.name)}"']
            )
            await self.create_index(descriptor)
            return

        await self._execute_ddl(
            self._filter_statements(descriptor) + [self._comment_statement(descriptor)]
        )

    async def drop_index(self, name: str) -> None:
        name = _identifier(name)
        async with self._session_factory() as session:
            result = await session.execute(
                text(
                    "SELECT indexname FROM pg_indexes "
                    "WHERE tablename = :table AND starts_with(indexname, :prefix)"
                ),
                {"table": self._table, "prefix": f"{name}__"},
            )
            companions = [_identifier(row[0]) for row in result.all()]

        statements = [f'DROP INDEX CONCURRENTLY IF EXISTS "{name}"']
        statements += [f'DROP INDEX CONCURRENTLY IF EXISTS "{c}"' for c in companions]
        await self._execute_ddl(statements)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _query_indexes(self, name: Optional[str] = None) -> List[IndexInfo]:
        sql = _INDEX_CATALOG_SQL
        params: Dict[str, Any] = {"table": self._table}
        if name is not None:
            sql += " AND c.relname = :name"
            params["name"] = name

        async with self._session_factory() as session:
            result = await session.execute(text(sql), params)
            rows = result.all()

        return [
            IndexInfo(
                name=row.name,
                status=status_from_catalog(bool(row.valid), bool(row.building)),
                definition=_parse_definition(row.definition),
            )
            for row in rows
        ]

    def _create_statements(self, descriptor: IndexDescriptor) -> List[str]:
        name = _identifier(descriptor.name)
        column = _identifier(descriptor.vector_path)
        if column not in Document.__table__.c:
            raise ValueError(f"Unknown vector column: {column!r}")

        column_dim = Document.__table__.c[column].type.dim
        if column_dim is not None and column_dim != descriptor.dimensions:
            raise ValueError(
                f"Index wants {descriptor.dimensions} dimensions, "
                f"column '{column}' holds {column_dim}"
            )

        opclass = _OPERATOR_CLASSES[descriptor.similarity]
        create = (
            f'CREATE INDEX CONCURRENTLY IF NOT EXISTS "{name}" '
            f"ON {self._table} USING hnsw ({column} {opclass}) "
            f"WITH (m = {int(self._hnsw_m)}, ef_construction = {int(self._hnsw_ef_construction)})"
        )
        return [create, self._comment_statement(descriptor)] + self._filter_statements(descriptor)

    def _filter_statements(self, descriptor: IndexDescriptor) -> List[str]:
        name = _identifier(descriptor.name)
        statements = []
        for path in descriptor.filter_paths:
            if path not in _FILTER_COLUMNS:
                raise ValueError(f"Unsupported filter path: {path!r}")
            statements.append(
                f'CREATE INDEX CONCURRENTLY IF NOT EXISTS "{name}__{path}" '
                f"ON {self._table} ({path})"
            )
        return statements

    @staticmethod
    def _comment_statement(descriptor: IndexDescriptor) -> str:
        payload = json.dumps(descriptor.definition(), sort_keys=True).replace("'", "''")
        return f"COMMENT ON INDEX \"{_identifier(descriptor.name)}\" IS '{payload}'"

    async def _execute_ddl(self, statements: List[str]) -> None:
        # CONCURRENTLY cannot run inside a transaction block.
        async with self._engine.connect() as conn:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            for statement in statements:
                logger.debug("Executing DDL: %s", statement)
                await conn.execute(text(statement))

    def _on_build_done(self, name: str, task: asyncio.Task) -> None:
        if self._builds.get(name) is task:
            del self._builds[name]
        if task.cancelled():
            logger.warning("Build of vector index '%s' was cancelled", name)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Build of vector index '%s' failed: %s", name, exc)
        else:
            logger.info("Build of vector index '%s' finished", name)
