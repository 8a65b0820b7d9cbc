"""In-memory DocumentStore.

Single-process only.  Useful for local dev and tests: it honours the same
live query contract as the Redis store and can fault its listeners on
demand (:meth:`InMemoryDocumentStore.fail_listeners`).
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Mapping, Optional

from roomrelay.store.base import (
    Batch,
    BatchCallback,
    Document,
    DocumentStore,
    ListenerRegistration,
    LiveQuery,
)

logger = logging.getLogger(__name__)


class _MemoryListener(ListenerRegistration):
    def __init__(
        self,
        store: InMemoryDocumentStore,
        query: LiveQuery,
        callback: BatchCallback,
    ) -> None:
        super().__init__(query, callback)
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        # Snapshot at registration time; later appends arrive via the queue
        self._initial: Batch = query.select(store.documents(query.collection))

    def push(self, item: Any) -> None:
        self._queue.put_nowait(item)

    async def _listen(self) -> None:
        initial, self._initial = self._initial, []
        await self._deliver(initial)

        while not self.stop_requested:
            # Drain everything appended since the last batch into one delivery
            pending = [await self._queue.get()]
            while not self._queue.empty():
                pending.append(self._queue.get_nowait())

            batch: Batch = []
            for item in pending:
                if isinstance(item, BaseException):
                    raise item
                batch.append(item)
            await self._deliver(self.query.select(batch))


class InMemoryDocumentStore(DocumentStore):
    """Collections are plain lists of ``(doc_id, document)`` pairs.

    When local persistence is enabled, appended documents are also mirrored
    into :attr:`local_cache` (emptied by :meth:`clear_persistence`).
    """

    def __init__(self, name: str = "memory") -> None:
        super().__init__()
        self.name = name
        self._collections: dict[str, list[tuple[str, Document]]] = {}
        self._listeners: list[_MemoryListener] = []
        self._ids = itertools.count(1)
        self._connected: bool = False
        self.local_cache: dict[str, Document] = {}
        self.fail_on_connect: Optional[BaseException] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self.fail_on_connect is not None:
            raise self.fail_on_connect
        self._connected = True
        logger.debug("InMemoryDocumentStore '%s' connected", self.name)

    async def disconnect(self) -> None:
        self._connected = False

    async def clear_persistence(self) -> None:
        self.local_cache.clear()

    def documents(self, collection: str) -> Batch:
        return list(self._collections.get(collection, []))

    async def append(self, collection: str, document: Mapping[str, Any]) -> str:
        if not self._connected:
            raise RuntimeError(f"InMemoryDocumentStore '{self.name}' is not connected")
        doc_id = f"doc-{next(self._ids)}"
        stored: Document = dict(document)
        self._collections.setdefault(collection, []).append((doc_id, stored))
        if self.persistence_enabled:
            self.local_cache[doc_id] = stored

        for listener in self._live_listeners():
            if listener.query.collection == collection:
                listener.push((doc_id, stored))
        return doc_id

    def _open_listener(self, query: LiveQuery, callback: BatchCallback) -> ListenerRegistration:
        if not self._connected:
            raise RuntimeError(f"InMemoryDocumentStore '{self.name}' is not connected")
        listener = _MemoryListener(self, query, callback)
        self._listeners.append(listener)
        return listener

    def _live_listeners(self) -> list[_MemoryListener]:
        self._listeners = [
            l for l in self._listeners if not l.done() and not l.stop_requested
        ]
        return list(self._listeners)

    def fail_listeners(self, exc: BaseException) -> int:
        """Fault every live listener with *exc*.  Returns how many were hit."""
        listeners = self._live_listeners()
        for listener in listeners:
            listener.push(exc)
        return len(listeners)
