"""
API Models for the Search Server

Request bodies for the search endpoints. They extend the core option models
with the query text, so validation of limits, weights and filters happens
once, here at the boundary.
"""

from __future__ import annotations

from pydantic import Field

from ..search.models import HybridSearchOptions, SearchOptions


# ---------------------------------------------------------------------
# Search Requests
# ---------------------------------------------------------------------

class VectorSearchRequest(SearchOptions):
    """
    Body of POST /search/vector.
    """
    query: str = Field(..., min_length=1, max_length=4096)

    def options(self) -> SearchOptions:
        return SearchOptions(**self.model_dump(exclude={"query"}))


class HybridSearchRequest(HybridSearchOptions):
    """
    Body of POST /search/hybrid.
    """
    query: str = Field(..., min_length=1, max_length=4096)

    def options(self) -> HybridSearchOptions:
        return HybridSearchOptions(**self.model_dump(exclude={"query"}))


class TextSearchRequest(SearchOptions):
    """
    Body of POST /search/text.
    """
    query: str = Field(..., min_length=1, max_length=4096)

    def options(self) -> SearchOptions:
        return SearchOptions(**self.model_dump(exclude={"query"}))
