"""
Database Package

Provides SQLAlchemy async session management, the document model and the
PostgreSQL + pgvector document store.
"""

from .session import async_engine, AsyncSessionLocal, init_models
from .models import Base, Document
from .document_store import PgDocumentStore

__all__ = [
    "async_engine",
    "AsyncSessionLocal",
    "init_models",
    "Base",
    "Document",
    "PgDocumentStore",
]
