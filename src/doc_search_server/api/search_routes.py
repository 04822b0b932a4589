"""
Search Routes

This module exposes the search core over HTTP: semantic vector search,
hybrid vector + keyword search, keyword-only search, find-similar by
document id and index statistics. Routes are thin; ranking, fallback and
caching all happen in SearchService.
"""

from typing import Annotated, List, Optional

from fastapi import APIRouter, Body, Depends, Path, status

from .dependencies import get_search_service
from .models import HybridSearchRequest, TextSearchRequest, VectorSearchRequest
from ..search.models import SearchOptions, SearchResult, SearchStats
from ..search.service import SearchService

router = APIRouter(prefix="/search", tags=["search"])

Service = Annotated[SearchService, Depends(get_search_service)]


@router.post(
    "/vector",
    response_model=List[SearchResult],
    summary="Vector-based semantic search",
    status_code=status.HTTP_200_OK,
)
async def vector_search(req: VectorSearchRequest, service: Service) -> List[SearchResult]:
    """
    Perform a semantic search over embedded documents.

    Parameters
    ----------
    req : VectorSearchRequest
        Contains:
        - query: Search query string
        - limit / num_candidates: Result and candidate bounds
        - filter: Optional user, file type, date and score filter

    Returns
    -------
    List[SearchResult]
        Results by descending cosine (or configured metric) score.
    """
    return await service.vector_search(req.query, req.options())


@router.post(
    "/hybrid",
    response_model=List[SearchResult],
    summary="Hybrid vector + keyword search",
    status_code=status.HTTP_200_OK,
)
async def hybrid_search(req: HybridSearchRequest, service: Service) -> List[SearchResult]:
    """
    Rank documents by a weighted blend of vector similarity and keyword
    relevance. Each result carries ``vector_score`` and ``text_score`` in its
    metadata.
    """
    return await service.hybrid_search(req.query, req.options())


@router.post(
    "/text",
    response_model=List[SearchResult],
    summary="Keyword search on title and content",
    status_code=status.HTTP_200_OK,
)
async def text_search(req: TextSearchRequest, service: Service) -> List[SearchResult]:
    """
    Case-insensitive keyword match on title and content, newest first. Works
    without embeddings or the vector index.
    """
    return await service.text_search(req.query, req.options())


@router.post(
    "/similar/{document_id}",
    response_model=List[SearchResult],
    summary="Find documents similar to a stored document",
    status_code=status.HTTP_200_OK,
)
async def find_similar(
    service: Service,
    document_id: Annotated[str, Path(min_length=1, max_length=64)],
    options: Annotated[Optional[SearchOptions], Body()] = None,
) -> List[SearchResult]:
    # DocumentNotFound is translated to 404 by the registered handler.
    return await service.find_similar(document_id, options)


@router.get(
    "/stats",
    response_model=SearchStats,
    summary="Document counts and vector index status",
)
async def search_stats(service: Service) -> SearchStats:
    return await service.get_search_stats()
