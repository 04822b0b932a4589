"""
Error Taxonomy and Global Error Handling

This module defines the exceptions raised by the search core and the
application-wide exception handlers that translate them into HTTP responses.

Design Goals
------------
- One exception type per failure kind, all deriving from SearchError
- Never leak internal exception details to clients
- Always return deterministic, machine-readable error responses
- Log full stack traces internally for debugging
"""

from __future__ import annotations

import logging
from typing import Dict, Any

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("docsearch.errors")


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class SearchError(RuntimeError):
    """Base error for the search subsystem."""


class DimensionMismatch(SearchError, ValueError):
    """Raised when two vectors of different length are compared."""

    def __init__(self, left: int, right: int) -> None:
        super().__init__(f"Vector dimensions differ: {left} != {right}")
        self.left = left
        self.right = right


class EmbeddingUnavailable(SearchError):
    """Raised when the embedding provider cannot produce a vector."""


class IndexLifecycleError(SearchError):
    """Base error for vector index management failures."""


class IndexTimeout(IndexLifecycleError):
    """Raised when an index does not become queryable in time."""


class IndexBuildFailed(IndexLifecycleError):
    """Raised when an index build ends in the FAILED state."""


class ManagedSearchFailed(SearchError):
    """Raised by the managed index path; always recovered by the fallback."""


class DocumentNotFound(SearchError):
    """Raised when a document is missing or has no usable embedding."""

    def __init__(self, document_id: str, reason: str = "not found") -> None:
        super().__init__(f"Document '{document_id}' {reason}")
        self.document_id = document_id


class SearchFailed(SearchError):
    """Raised when both the managed and the fallback path failed."""


# ---------------------------------------------------------------------
# Public Exception Handlers
# ---------------------------------------------------------------------

def _error_response(status_code: int, error: str, detail: str) -> JSONResponse:
    payload: Dict[str, Any] = {
        "error": error,
        "detail": detail,
    }
    return JSONResponse(status_code=status_code, content=payload)


async def document_not_found_handler(
    request: Request,
    exc: DocumentNotFound,
) -> JSONResponse:
    """
    Translate DocumentNotFound into a 404 response.
    """
    return _error_response(404, "document_not_found", str(exc))


async def search_unavailable_handler(
    request: Request,
    exc: SearchError,
) -> JSONResponse:
    """
    Translate SearchFailed and EmbeddingUnavailable into a 503 response.

    The detail is generic: callers must not learn which internal path failed.
    """
    logger.error(
        "Search unavailable during request: %s %s (%s)",
        request.method,
        request.url.path,
        type(exc).__name__,
    )
    return _error_response(503, "search_unavailable", "Search is temporarily unavailable")


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all handler for uncaught exceptions.

    This handler should be registered with FastAPI as the final safety net
    for any exception not otherwise handled by route-level or framework-level
    handlers.

    Behavior
    --------
    - Logs the full exception stack trace for internal diagnostics.
    - Returns a generic 500 error to the client with no internal details.

    Parameters
    ----------
    request : Request
        The incoming HTTP request that triggered the exception.

    exc : Exception
        The uncaught exception instance.

    Returns
    -------
    JSONResponse
        A JSON 500 response with a minimal error payload.
    """

    # Log full traceback internally (never returned to client)
    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )

    return _error_response(500, "internal_server_error", "Internal server error")
