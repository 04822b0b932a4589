"""
Vector Index Lifecycle Manager

Creates, inspects, updates and waits on the named vector index attached to
the document collection.

State Machine
-------------
    ABSENT -> BUILDING -> READY
                  |
                  +-----> FAILED (terminal)

Concurrency
-----------
- ensure_index() calls for the same index name are serialized by a
  per-name asyncio.Lock, so concurrent startups never race to create
  duplicate indexes.
- The manager keeps a read-mostly view of the last observed status per
  index. The search path reads it to decide whether the managed index is
  worth trying; status() always refreshes it from the store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List

from ..core.errors import IndexBuildFailed, IndexTimeout
from .models import IndexDescriptor, IndexInfo, IndexStatus
from .store import DocumentStore

logger = logging.getLogger("docsearch.index")


class IndexManager:
    """
    Owner of vector index definitions.

    This is the only component that writes index definitions to the store.
    """

    def __init__(
        self,
        store: DocumentStore,
        poll_interval: float = 5.0,
        max_wait: float = 300.0,
    ) -> None:
        """
        Parameters
        ----------
        store : DocumentStore
            Store exposing index management operations.

        poll_interval : float
            Seconds between status checks while waiting for readiness.

        max_wait : float
            Seconds to wait for an index to become queryable before raising
            IndexTimeout.
        """
        self._store = store
        self._poll_interval = poll_interval
        self._max_wait = max_wait

        self._locks: Dict[str, asyncio.Lock] = {}
        self._known_status: Dict[str, IndexStatus] = {}

    # ------------------------------------------------------------------
    # Status View
    # ------------------------------------------------------------------

    def known_status(self, name: str) -> IndexStatus:
        """
        Return the last observed status without touching the store.
        """
        return self._known_status.get(name, IndexStatus.ABSENT)

    def is_queryable(self, name: str) -> bool:
        return self.known_status(name) is IndexStatus.READY

    async def status(self, name: str) -> IndexStatus:
        """
        Query the store for the current status of ``name``.
        """
        info = await self._store.get_index(name)
        current = info.status if info is not None else IndexStatus.ABSENT
        self._known_status[name] = current
        return current

    async def describe(self, descriptor: IndexDescriptor) -> IndexDescriptor:
        """
        Return ``descriptor`` carrying the live status of its index.
        """
        current = await self.status(descriptor.name)
        return descriptor.model_copy(update={"status": current})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ensure_index(self, descriptor: IndexDescriptor) -> IndexStatus:
        """
        Make sure the index described by ``descriptor`` exists and is
        queryable.

        - Absent: create it and wait until it is queryable.
        - Present with a different definition: attempt an update; a failed
          update is logged and does not abort.
        - Present and queryable: return immediately.

        Returns
        -------
        IndexStatus
            READY on success.

        Raises
        ------
        IndexTimeout
            If the index is not queryable within ``max_wait`` seconds.

        IndexBuildFailed
            If the build ends in the FAILED state.
        """
        name = descriptor.name
        async with self._lock_for(name):
            info = await self._store.get_index(name)

            if info is None:
                logger.info("Creating vector index '%s'", name)
                await self._store.create_index(descriptor)
                self._known_status[name] = IndexStatus.BUILDING
                return await self._wait_until_queryable(name)

            self._known_status[name] = info.status

            if self._definition_differs(info, descriptor):
                info = await self._try_update(descriptor, info)

            if info.queryable:
                logger.info("Vector index '%s' already exists and is queryable", name)
                return IndexStatus.READY

            if info.status is IndexStatus.FAILED:
                raise IndexBuildFailed(f"Vector index '{name}' is in FAILED state")

            logger.info("Vector index '%s' exists but is not queryable yet", name)
            return await self._wait_until_queryable(name)

    async def list_indexes(self) -> List[IndexInfo]:
        indexes = await self._store.list_indexes()
        for info in indexes:
            self._known_status[info.name] = info.status
        return indexes

    async def drop_index(self, name: str) -> None:
        async with self._lock_for(name):
            logger.info("Dropping vector index '%s'", name)
            await self._store.drop_index(name)
            self._known_status[name] = IndexStatus.ABSENT

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    @staticmethod
    def _definition_differs(info: IndexInfo, descriptor: IndexDescriptor) -> bool:
        if info.definition is None:
            # Unknown while building; only a finished index can be compared.
            return info.status is not IndexStatus.BUILDING
        return info.definition != descriptor.definition()

    async def _try_update(
        self,
        descriptor: IndexDescriptor,
        info: IndexInfo,
    ) -> IndexInfo:
        """
        Best-effort update of an existing index definition. Failures are
        logged and the previous state is kept.
        """
        logger.info("Updating definition of vector index '%s'", descriptor.name)
        try:
            await self._store.update_index(descriptor)
        except Exception as exc:
            logger.warning(
                "Update of vector index '%s' failed (%s): %s",
                descriptor.name,
                type(exc).__name__,
                exc,
            )
            return info

        refreshed = await self._store.get_index(descriptor.name)
        if refreshed is None:
            refreshed = IndexInfo(name=descriptor.name, status=IndexStatus.BUILDING)
        self._known_status[descriptor.name] = refreshed.status
        return refreshed

    async def _wait_until_queryable(self, name: str) -> IndexStatus:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._max_wait
        logger.info("Waiting for vector index '%s' to become queryable", name)

        while True:
            try:
                current = await self.status(name)
            except Exception as exc:
                logger.warning(
                    "Error checking status of vector index '%s': %s", name, exc
                )
                current = None

            if current is IndexStatus.READY:
                logger.info("Vector index '%s' is ready for querying", name)
                return current

            if current is IndexStatus.FAILED:
                raise IndexBuildFailed(f"Vector index '{name}' build failed")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise IndexTimeout(
                    f"Vector index '{name}' did not become queryable "
                    f"within {self._max_wait:g}s"
                )

            logger.debug(
                "Vector index '%s' status: %s, waiting...",
                name,
                current.value if current is not None else "unknown",
            )
            await asyncio.sleep(min(self._poll_interval, remaining))
