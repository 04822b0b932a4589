"""
PostgreSQL Document Store Tests

SQL generation and catalog mapping of the pgvector store, checked without a
database by compiling statements against the PostgreSQL dialect.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.dialects import postgresql
from unittest.mock import MagicMock

from doc_search_server.db.document_store import (
    PgDocumentStore,
    _like_pattern,
    build_keyword_statement,
    build_knn_statement,
    build_scan_statement,
    filter_clauses,
    status_from_catalog,
)
from doc_search_server.db.models import Document
from doc_search_server.search.models import (
    IndexDescriptor,
    IndexStatus,
    SearchFilter,
    SimilarityMetric,
)
from doc_search_server.config import settings


def compile_sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


@pytest.fixture
def pg_store():
    return PgDocumentStore(MagicMock(), session_factory=MagicMock(), hnsw_m=24, hnsw_ef_construction=100)


@pytest.fixture
def pg_descriptor():
    return IndexDescriptor(
        name="vector_search_index",
        dimensions=settings.embedding_dimensions,
        similarity=SimilarityMetric.COSINE,
        filter_paths=("user_id", "file_type"),
    )


class TestStatementBuilders:

    def test_knn_orders_by_cosine_distance(self):
        sql = compile_sql(build_knn_statement([1.0, 0.0], SimilarityMetric.COSINE, limit=5))

        assert "<=>" in sql
        assert "ORDER BY" in sql
        assert "LIMIT" in sql
        assert "documents.embedding IS NOT NULL" in sql

    @pytest.mark.parametrize(
        "metric, operator",
        [(SimilarityMetric.EUCLIDEAN, "<->"), (SimilarityMetric.DOT_PRODUCT, "<#>")],
    )
    def test_knn_operator_per_metric(self, metric, operator):
        assert operator in compile_sql(build_knn_statement([1.0, 0.0], metric, limit=5))

    def test_filter_clauses(self):
        search_filter = SearchFilter(
            user_id="alice",
            file_type_in=("pdf", "docx"),
            created_from=datetime(2024, 1, 1, tzinfo=timezone.utc),
            created_to=datetime(2024, 12, 31, tzinfo=timezone.utc),
        )
        clauses = filter_clauses(search_filter, exclude_id="doc-a")

        # embedding, user, file type, from, to, exclusion
        assert len(clauses) == 6

        sql = compile_sql(build_scan_statement(search_filter, limit=50, exclude_id="doc-a"))
        assert "documents.user_id =" in sql
        assert "documents.file_type IN" in sql
        assert "documents.created_at >=" in sql
        assert "documents.created_at <=" in sql
        assert "documents.id !=" in sql

    def test_no_filter_only_requires_embedding(self):
        assert len(filter_clauses(None)) == 1
        assert filter_clauses(None, require_embedding=False) == []

    def test_keyword_statement(self):
        sql = compile_sql(
            build_keyword_statement("budget", SearchFilter(user_id="alice"), limit=5)
        )

        assert "documents.title ILIKE" in sql
        assert "documents.content ILIKE" in sql
        assert "documents.user_id =" in sql
        assert "ORDER BY documents.created_at DESC" in sql
        assert "LIMIT" in sql
        assert "embedding IS NOT NULL" not in sql

    def test_like_pattern_escapes_wildcards(self):
        assert _like_pattern("50%_off") == "%50\\%\\_off%"
        assert _like_pattern("a\\b") == "%a\\\\b%"


class TestKeywordSearch:

    @pytest.mark.asyncio
    async def test_blank_query_skips_database(self, pg_store):
        assert await pg_store.keyword_search("   ", None, 10) == []
        pg_store._session_factory.assert_not_called()


class TestCatalogMapping:

    def test_status_from_catalog(self):
        assert status_from_catalog(valid=True, building=False) is IndexStatus.READY
        assert status_from_catalog(valid=False, building=True) is IndexStatus.BUILDING
        assert status_from_catalog(valid=False, building=False) is IndexStatus.FAILED


class TestIndexDDL:

    def test_create_statements(self, pg_store, pg_descriptor):
        statements = pg_store._create_statements(pg_descriptor)

        create = statements[0]
        assert create.startswith('CREATE INDEX CONCURRENTLY IF NOT EXISTS "vector_search_index"')
        assert "USING hnsw (embedding vector_cosine_ops)" in create
        assert "m = 24" in create
        assert "ef_construction = 100" in create

        comment = statements[1]
        assert comment.startswith('COMMENT ON INDEX "vector_search_index"')
        assert '"similarity": "cosine"' in comment

        assert statements[2:] == [
            'CREATE INDEX CONCURRENTLY IF NOT EXISTS "vector_search_index__file_type" '
            "ON documents (file_type)",
            'CREATE INDEX CONCURRENTLY IF NOT EXISTS "vector_search_index__user_id" '
            "ON documents (user_id)",
        ]

    def test_rejects_unsafe_identifier(self, pg_store, pg_descriptor):
        bad = pg_descriptor.model_copy(update={"name": 'idx"; DROP TABLE documents; --'})
        with pytest.raises(ValueError):
            pg_store._create_statements(bad)

    def test_rejects_unknown_filter_path(self, pg_store, pg_descriptor):
        bad = pg_descriptor.model_copy(update={"filter_paths": ("title",)})
        with pytest.raises(ValueError):
            pg_store._create_statements(bad)

    def test_rejects_dimension_mismatch(self, pg_store, pg_descriptor):
        bad = pg_descriptor.model_copy(update={"dimensions": settings.embedding_dimensions + 1})
        with pytest.raises(ValueError):
            pg_store._create_statements(bad)


class TestDocumentModel:

    def test_embedding_column_dimensions(self):
        assert Document.__table__.c.embedding.type.dim == settings.embedding_dimensions

    def test_metadata_column_name(self):
        assert "metadata" in Document.__table__.c
