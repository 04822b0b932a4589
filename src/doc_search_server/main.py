"""
Search Server Application Entry Point

This module defines the FastAPI application instance, builds the search
service once in the application lifespan, registers all routers and
configures global exception handling.

Design Goals
------------
- Deterministic startup: every collaborator is built once, in one place
- Index setup never blocks or crashes startup
- Test-friendly via create_app() and dependency overrides
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

from fastapi import FastAPI

from .config import Settings, settings
from .core.errors import (
    DocumentNotFound,
    EmbeddingUnavailable,
    SearchFailed,
    document_not_found_handler,
    search_unavailable_handler,
    unhandled_exception_handler,
)
from .db import AsyncSessionLocal, PgDocumentStore, async_engine, init_models
from .embeddings.embedder import Embedder, EmbeddingGateway
from .search.cache import InMemoryTTLCache, ResultCache
from .search.service import SearchService

from .api import (
    health_routes,
    search_routes,
)


logger = logging.getLogger("docsearch.app")


# ---------------------------------------------------------------------
# Service Construction
# ---------------------------------------------------------------------

def build_search_service(cfg: Settings) -> SearchService:
    """
    Wire the store, embedding gateway, caches and index manager from
    configuration.
    """
    store = PgDocumentStore(
        async_engine,
        AsyncSessionLocal,
        hnsw_m=cfg.hnsw_m,
        hnsw_ef_construction=cfg.hnsw_ef_construction,
    )

    embedder = Embedder(
        api_key=cfg.embedding_api_key.get_secret_value(),
        model=cfg.embedding_model,
        base_url=cfg.embedding_base_url,
        dimensions=cfg.embedding_dimensions,
        timeout=cfg.embedding_timeout_seconds,
    )
    gateway = EmbeddingGateway(
        embedder,
        dimensions=cfg.embedding_dimensions,
        cache=InMemoryTTLCache(max_entries=cfg.embedding_cache_max_entries),
        cache_ttl=cfg.embedding_cache_ttl_seconds,
        timeout=cfg.embedding_timeout_seconds,
        failure_policy=cfg.embedding_failure_policy,
    )

    result_cache = None
    if cfg.result_cache_enabled:
        result_cache = ResultCache(
            InMemoryTTLCache(max_entries=cfg.result_cache_max_entries),
            ttl=cfg.result_cache_ttl_seconds,
        )

    return SearchService.from_settings(store, gateway, cfg, result_cache=result_cache)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("Starting doc-search-server")

    try:
        await init_models()
    except Exception as exc:
        logger.warning("Database schema setup failed: %s", exc)

    service = build_search_service(settings)
    app.state.search_service = service

    # Searches run on the fallback path until the index is queryable.
    index_task = asyncio.create_task(service.ensure_index())

    yield

    logger.info("Shutting down doc-search-server")
    index_task.cancel()
    with suppress(asyncio.CancelledError):
        await index_task
    await async_engine.dispose()


# ---------------------------------------------------------------------
# Application Factory (Test-Friendly)
# ---------------------------------------------------------------------

def create_app(with_lifespan: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Parameters
    ----------
    with_lifespan : bool
        Build the search service at startup. Tests pass False and install
        their own service through dependency overrides.

    Returns
    -------
    FastAPI
        Fully configured FastAPI application.
    """
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(
        title="doc-search-server",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan if with_lifespan else None,
    )

    # --------------------------------------------------------------
    # Exception Handling
    # --------------------------------------------------------------

    app.add_exception_handler(DocumentNotFound, document_not_found_handler)
    app.add_exception_handler(SearchFailed, search_unavailable_handler)
    app.add_exception_handler(EmbeddingUnavailable, search_unavailable_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(search_routes.router)

    return app


# ---------------------------------------------------------------------
# Default Application Instance (for Uvicorn/Gunicorn)
# ---------------------------------------------------------------------

app = create_app()
