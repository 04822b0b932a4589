"""
Embedding Client and Gateway

This module turns text into fixed-dimension vectors for the search core.

- Embedder: HTTP client for the OpenAI embeddings API (or any compatible
  provider) with batching, transport error isolation and strict response
  validation.
- EmbeddingGateway: what the search core consumes. Adds a pluggable cache,
  a timeout independent of any search timeout, dimension checking, and an
  explicit failure policy.

Failure Policy
--------------
- "propagate": provider failures raise EmbeddingUnavailable.
- "degrade":   provider failures are logged and replaced by a deterministic
               local hashed vector (see local_embedding).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import math
import re
from typing import List, Literal, Optional, Sequence

import httpx

from ..config import settings
from ..core.errors import EmbeddingUnavailable
from ..search.cache import CacheBackend

logger = logging.getLogger("docsearch.embedder")

FailurePolicy = Literal["propagate", "degrade"]


class Embedder:
    """
    Asynchronous embedding generator for batches of text.

    This class performs no caching; EmbeddingGateway handles that.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        dimensions: Optional[int] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize an Embedder.

        Parameters
        ----------
        api_key : Optional[str]
            Optional override for the API key. Defaults to settings.embedding_api_key.

        model : Optional[str]
            Optional override for embedding model. Defaults to settings.embedding_model.

        base_url : Optional[str]
            Embeddings endpoint. Defaults to settings.embedding_base_url.

        dimensions : Optional[int]
            Requested output dimensionality. Defaults to settings.embedding_dimensions.

        timeout : float
            HTTP timeout for each request.

        transport : Optional[httpx.AsyncBaseTransport]
            Custom transport, mainly for tests.
        """
        self.api_key = api_key or settings.embedding_api_key.get_secret_value()
        self.model = model or settings.embedding_model
        self.base_url = base_url or settings.embedding_base_url
        self.dimensions = dimensions or settings.embedding_dimensions
        self.timeout = timeout
        self._transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(
        self,
        texts: Sequence[str],
        batch_size: int = 20,
    ) -> List[List[float]]:
        """
        Generate embeddings for a sequence of input texts.

        Parameters
        ----------
        texts : Sequence[str]
            List or sequence of input text strings.

        batch_size : int
            Maximum batch size per request. Helps avoid API token/size limits.

        Returns
        -------
        List[List[float]]
            One embedding per input text, in input order.

        Raises
        ------
        EmbeddingUnavailable
            If any batch fails or the response is malformed.
        """
        if not texts:
            return []

        all_embeddings: List[List[float]] = []
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for start in range(0, len(texts), batch_size):
                batch = list(texts[start : start + batch_size])
                payload = {
                    "model": self.model,
                    "input": batch,
                    "dimensions": self.dimensions,
                }

                try:
                    response = await client.post(
                        self.base_url,
                        json=payload,
                        headers=headers,
                    )
                    response.raise_for_status()
                except httpx.HTTPError as exc:
                    logger.error(
                        "Embedding request failed (%s): batch size=%d, error=%s",
                        type(exc).__name__,
                        len(batch),
                        str(exc),
                    )
                    raise EmbeddingUnavailable(
                        f"Embedding generation failed: {type(exc).__name__}"
                    ) from exc

                try:
                    data = response.json()
                except ValueError as exc:
                    raise EmbeddingUnavailable("Embedding response is not valid JSON.") from exc

                embeddings = self._extract_embeddings(data)
                if len(embeddings) != len(batch):
                    raise EmbeddingUnavailable(
                        f"Expected {len(batch)} embeddings, got {len(embeddings)}."
                    )
                all_embeddings.extend(embeddings)

        return all_embeddings

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_embeddings(data: dict) -> List[List[float]]:
        """
        Parse and validate embedding output format.

        OpenAI returns:
            { "data": [ {"embedding": [...]}, ... ] }

        Raises
        ------
        EmbeddingUnavailable
            If the API returns unexpected structure.
        """
        if not isinstance(data, dict) or "data" not in data:
            raise EmbeddingUnavailable("Embedding response missing 'data' field.")

        records = data["data"]
        if not isinstance(records, list):
            raise EmbeddingUnavailable("'data' field must be a list.")

        embeddings: List[List[float]] = []

        for index, record in enumerate(records):
            if not isinstance(record, dict) or "embedding" not in record:
                raise EmbeddingUnavailable(
                    f"Malformed embedding record at index {index}: {record!r}"
                )

            emb = record["embedding"]
            if not isinstance(emb, list) or not all(
                isinstance(x, (float, int)) for x in emb
            ):
                raise EmbeddingUnavailable(
                    f"Invalid embedding vector at index {index}: must be float list."
                )

            embeddings.append([float(x) for x in emb])

        return embeddings


# ---------------------------------------------------------------------
# Local Degraded Embedding
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def local_embedding(text: str, dimensions: int) -> List[float]:
    """
    Deterministic, provider-free pseudo-embedding of length ``dimensions``.

    Each lower-cased token adds weight to a bucket chosen by its hash, with
    a hashed sign; the result is L2-normalized. Empty text yields the zero
    vector. Texts sharing words land near each other, which keeps degraded
    search usable, but it carries no semantics.
    """
    vector = [0.0] * dimensions
    for token in _TOKEN_RE.findall(text.lower()):
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        bucket = int.from_bytes(digest[:4], "big") % dimensions
        sign = 1.0 if digest[4] & 1 else -1.0
        vector[bucket] += sign

    magnitude = math.sqrt(sum(v * v for v in vector))
    if magnitude == 0.0:
        return vector
    return [v / magnitude for v in vector]


# ---------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------

class EmbeddingGateway:
    """
    Cached, timeout-bounded text vectorization for the search core.
    """

    def __init__(
        self,
        embedder: Embedder,
        dimensions: int,
        cache: Optional[CacheBackend] = None,
        cache_ttl: float = 86400.0,
        timeout: float = 10.0,
        failure_policy: FailurePolicy = "degrade",
    ) -> None:
        if failure_policy not in ("propagate", "degrade"):
            raise ValueError(f"Unknown embedding failure policy: {failure_policy!r}")

        self._embedder = embedder
        self.dimensions = dimensions
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._timeout = timeout
        self.failure_policy = failure_policy

    @staticmethod
    def cache_key(text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"embedding:text:{digest}"

    async def embed(self, text: str) -> List[float]:
        """
        Return the embedding for ``text`` (length ``dimensions``).

        Raises
        ------
        EmbeddingUnavailable
            When the provider fails and the policy is "propagate".
        """
        key = self.cache_key(text)
        cached = await self._cache_get(key)
        if cached is not None:
            return cached

        try:
            vector = await self._embed_remote(text)
        except EmbeddingUnavailable as exc:
            if self.failure_policy == "propagate":
                raise
            logger.warning("Using local fallback embedding: %s", exc)
            return local_embedding(text, self.dimensions)

        await self._cache_set(key, vector)
        return vector

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _embed_remote(self, text: str) -> List[float]:
        try:
            vectors = await asyncio.wait_for(
                self._embedder.embed([text]), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            raise EmbeddingUnavailable(
                f"Embedding provider timed out after {self._timeout:g}s"
            ) from exc

        if not vectors:
            raise EmbeddingUnavailable("Embedding provider returned no vectors.")

        vector = vectors[0]
        if len(vector) != self.dimensions:
            raise EmbeddingUnavailable(
                f"Embedding has {len(vector)} dimensions, expected {self.dimensions}."
            )
        return vector

    async def _cache_get(self, key: str) -> Optional[List[float]]:
        if self._cache is None:
            return None
        try:
            raw = await self._cache.get(key)
            if raw is None:
                return None
            vector = [float(x) for x in json.loads(raw)]
        except Exception as exc:
            logger.debug("Embedding cache read failed: %s", exc)
            return None
        if len(vector) != self.dimensions:
            return None
        return vector

    async def _cache_set(self, key: str, vector: List[float]) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.set(key, json.dumps(vector), self._cache_ttl)
        except Exception as exc:
            logger.debug("Embedding cache write failed: %s", exc)
