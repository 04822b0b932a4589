"""
Search Data Models

This module defines the canonical value types of the search subsystem:

- SearchFilter / SearchOptions / HybridSearchOptions: per-call request values,
  validated once at the API boundary
- SearchResult / SearchStats: assembled outputs
- IndexDescriptor / IndexInfo: desired and observed vector index state
- StoredDocument / ScoredDocument: the projection of a stored document the
  core reads, and a candidate carrying its vector score

None of these values has a persisted identity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_LIMIT = 100
MAX_NUM_CANDIDATES = 1000


# ---------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------

class SimilarityMetric(str, Enum):
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    DOT_PRODUCT = "dotProduct"


class IndexStatus(str, Enum):
    """
    Vector index lifecycle state.

    ABSENT is initial; BUILDING moves to READY or to the terminal FAILED.
    """
    ABSENT = "ABSENT"
    BUILDING = "BUILDING"
    READY = "READY"
    FAILED = "FAILED"


# ---------------------------------------------------------------------
# Request Values
# ---------------------------------------------------------------------

class SearchFilter(BaseModel):
    """
    Equality / membership filter applied on both search paths.
    """

    user_id: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Only return documents owned by this user.",
    )

    file_type_in: Optional[Tuple[str, ...]] = Field(
        default=None,
        description="Only return documents whose file type is in this set.",
    )

    score_threshold: Optional[float] = Field(
        default=None,
        ge=-1.0,
        le=2.0,
        description=(
            "Drop results scoring below this value. Vector scores lie in "
            "[-1, 1]; hybrid scores reach vector_weight + text_weight."
        ),
    )

    created_from: Optional[datetime] = Field(
        default=None,
        description="Inclusive lower bound on the document creation time.",
    )

    created_to: Optional[datetime] = Field(
        default=None,
        description="Inclusive upper bound on the document creation time.",
    )

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("file_type_in")
    @classmethod
    def _normalize_file_types(
        cls, value: Optional[Tuple[str, ...]]
    ) -> Optional[Tuple[str, ...]]:
        if value is None:
            return None
        cleaned = sorted({v.strip() for v in value if v and v.strip()})
        if not cleaned:
            raise ValueError("file_type_in must contain at least one file type")
        return tuple(cleaned)

    @model_validator(mode="after")
    def _check_date_range(self) -> "SearchFilter":
        if (
            self.created_from is not None
            and self.created_to is not None
            and self.created_from > self.created_to
        ):
            raise ValueError("created_from must not be after created_to")
        return self


class SearchOptions(BaseModel):
    """
    Options shared by all search operations.

    ``num_candidates`` widens the managed-index candidate pool. The executor
    never asks for fewer than ``limit * 2`` candidates, whatever is given.
    """

    limit: int = Field(default=10, ge=1, le=MAX_LIMIT)
    num_candidates: int = Field(default=50, ge=1, le=MAX_NUM_CANDIDATES)
    filter: Optional[SearchFilter] = None

    model_config = ConfigDict(extra="forbid", frozen=True)


class HybridSearchOptions(SearchOptions):
    """
    Options for hybrid search. Weights are linear coefficients and need not
    sum to 1.
    """

    text_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)


# ---------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------

class SearchResult(BaseModel):
    """
    A single ranked search hit.
    """
    id: str = Field(..., min_length=1)
    title: str
    content: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class SearchStats(BaseModel):
    total_documents: int = Field(..., ge=0)
    indexed_documents: int = Field(..., ge=0)
    index_status: IndexStatus

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# Index State
# ---------------------------------------------------------------------

class IndexDescriptor(BaseModel):
    """
    Desired definition of a named vector index, plus its current status.
    """

    name: str = Field(..., min_length=1)
    vector_path: str = Field(default="embedding", min_length=1)
    dimensions: int = Field(..., ge=1)
    similarity: SimilarityMetric = SimilarityMetric.COSINE
    filter_paths: Tuple[str, ...] = ()
    status: IndexStatus = IndexStatus.ABSENT

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("filter_paths")
    @classmethod
    def _sort_filter_paths(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(sorted(set(value)))

    @property
    def queryable(self) -> bool:
        return self.status is IndexStatus.READY

    def definition(self) -> Dict[str, Any]:
        """
        Return the comparable field/filter definition (name and status
        excluded).
        """
        return {
            "vector_path": self.vector_path,
            "dimensions": self.dimensions,
            "similarity": self.similarity.value,
            "filter_paths": list(self.filter_paths),
        }


@dataclass(frozen=True)
class IndexInfo:
    """
    Index state as reported by the store.

    ``definition`` is None when the store cannot tell how the index was
    defined (for example while it is still being built).
    """
    name: str
    status: IndexStatus
    definition: Optional[Dict[str, Any]] = None

    @property
    def queryable(self) -> bool:
        return self.status is IndexStatus.READY


# ---------------------------------------------------------------------
# Store Projections
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StoredDocument:
    id: str
    title: str = ""
    content: str = ""
    user_id: Optional[str] = None
    file_type: Optional[str] = None
    embedding: Optional[List[float]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScoredDocument:
    document: StoredDocument
    vector_score: float
