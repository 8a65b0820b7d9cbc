"""
roomrelay -- Document store collaborator interface.

The relay only needs four things from a store:

    1. Append a flat document to a collection and get its id back.
    2. A *live query*: equality filters, one ``>=`` lower bound on a
       temporal field, ascending order on a field.  Matching documents
       are pushed to an async callback in batches, first the existing
       matches, then new ones as they are appended.
    3. An explicit stop for a live query, observable as the completion of
       its background task.
    4. Connection lifecycle: connect, disable local persistence,
       terminate, clear the local cache, disconnect.

Concrete stores: :mod:`roomrelay.store.redis_streams` (production) and
:mod:`roomrelay.store.memory` (single process, tests, local runs).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

Document = dict[str, Any]
Batch = list[tuple[str, Document]]
BatchCallback = Callable[[Batch], Awaitable[None]]

_INSTANT_ADAPTER: TypeAdapter[datetime] = TypeAdapter(datetime)


class ConnectFault(Exception):
    """Raised when connecting to or configuring a store fails."""

    def __init__(self, store: str, cause: BaseException) -> None:
        self.store = store
        self.cause = cause
        super().__init__(f"Failed to connect {store}: {cause}")


def to_instant(value: Any) -> Optional[datetime]:
    """Coerce a stored temporal value into an aware UTC datetime.

    Returns ``None`` when the value cannot be interpreted as an instant;
    such documents never match a range filter.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        instant = (
            value if isinstance(value, datetime)
            else _INSTANT_ADAPTER.validate_python(value)
        )
    except ValidationError:
        return None
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Live query definition
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LiveQuery:
    """Immutable description of a live query.

    Built fluently, mirroring document-store query builders::

        LiveQuery("Messages")
            .where_equal("roomCode", "ABCD")
            .where_at_least("timestamp", watermark)
            .order_by("timestamp")

    The bound is fixed at construction; moving it means building (and
    listening with) a new query.
    """

    collection: str
    equals: tuple[tuple[str, Any], ...] = ()
    bound_field: Optional[str] = None
    bound: Optional[datetime] = None
    order_field: Optional[str] = None

    def where_equal(self, field: str, value: Any) -> LiveQuery:
        return replace(self, equals=self.equals + ((field, value),))

    def where_at_least(self, field: str, bound: datetime) -> LiveQuery:
        return replace(self, bound_field=field, bound=to_instant(bound))

    def order_by(self, field: str) -> LiveQuery:
        return replace(self, order_field=field)

    def matches(self, document: Mapping[str, Any]) -> bool:
        for field, value in self.equals:
            if document.get(field) != value:
                return False
        if self.bound_field is not None:
            instant = to_instant(document.get(self.bound_field))
            if instant is None:
                return False
            if self.bound is not None and instant < self.bound:
                return False
        return True

    def sort(self, batch: Batch) -> Batch:
        """Order *batch* by the query's order field (stable)."""
        if self.order_field is None:
            return batch
        field = self.order_field

        def _key(item: tuple[str, Document]) -> tuple[bool, datetime]:
            instant = to_instant(item[1].get(field))
            if instant is None:
                return (True, datetime.min.replace(tzinfo=timezone.utc))
            return (False, instant)

        return sorted(batch, key=_key)

    def select(self, batch: Batch) -> Batch:
        """Filter then order *batch*."""
        return self.sort([item for item in batch if self.matches(item[1])])


# ---------------------------------------------------------------------------
# Listener registration (one open live query)
# ---------------------------------------------------------------------------

class ListenerRegistration(ABC):
    """Handle on one open live query and its background listening task.

    Lifecycle:
        - *active* while :attr:`task` is running,
        - *completed* when the task returns or is cancelled,
        - *faulted* when the task raises.

    Subclasses implement :meth:`_listen`, calling :meth:`_deliver` for each
    batch and checking :attr:`stop_requested` between reads.
    """

    def __init__(self, query: LiveQuery, callback: BatchCallback) -> None:
        self.query: LiveQuery = query
        self._callback: BatchCallback = callback
        self._stop_requested: bool = False
        self._task: Optional[asyncio.Task[None]] = None

    def start(self, name: Optional[str] = None) -> ListenerRegistration:
        if self._task is not None:
            raise RuntimeError("ListenerRegistration already started")
        self._task = asyncio.create_task(
            self._listen(),
            name=name or f"listener-{self.query.collection}",
        )
        return self

    @property
    def task(self) -> asyncio.Task[None]:
        if self._task is None:
            raise RuntimeError("ListenerRegistration has not been started")
        return self._task

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def done(self) -> bool:
        """Non-blocking poll: has the listening task terminated?"""
        return self._task is not None and self._task.done()

    def error(self) -> Optional[BaseException]:
        """The exception the task terminated with, if any.

        Only meaningful once :meth:`done` is True.  A cancelled task
        counts as a clean termination.
        """
        if not self.done() or self.task.cancelled():
            return None
        return self.task.exception()

    async def stop(self) -> None:
        """Request termination and wait for the task to finish.

        Idempotent.  When called from the listening task itself (i.e. from
        inside the batch callback) the task cannot wait on itself; the stop
        flag is set and the loop exits as soon as the callback returns,
        before any further read.
        """
        self._stop_requested = True
        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return

        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.debug(
                "Listener on %s ended with %r while stopping",
                self.query.collection,
                task.exception(),
            )

    async def _deliver(self, batch: Batch) -> None:
        if batch and not self._stop_requested:
            await self._callback(batch)

    @abstractmethod
    async def _listen(self) -> None:
        """Background loop: deliver batches until stopped or failed."""


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class DocumentStore(ABC):
    """Append-only document store with live queries."""

    def __init__(self) -> None:
        self.persistence_enabled: bool = True
        self._registrations: set[ListenerRegistration] = set()

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection.  Raises on failure."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection.  Safe to call when not connected."""

    @abstractmethod
    async def clear_persistence(self) -> None:
        """Drop any locally cached documents / cursors."""

    @abstractmethod
    async def append(self, collection: str, document: Mapping[str, Any]) -> str:
        """Append *document* and return its id."""

    @abstractmethod
    def _open_listener(
        self, query: LiveQuery, callback: BatchCallback
    ) -> ListenerRegistration:
        ...

    def listen(self, query: LiveQuery, callback: BatchCallback) -> ListenerRegistration:
        """Open a live query.  Must be called from a running event loop."""
        registration = self._open_listener(query, callback)
        registration.start()
        self._registrations.add(registration)
        registration.task.add_done_callback(
            lambda _t: self._registrations.discard(registration)
        )
        return registration

    @property
    def active_listeners(self) -> int:
        return sum(1 for r in self._registrations if not r.done())

    async def terminate(self) -> None:
        """Stop every live query opened through this store, then disconnect."""
        for registration in list(self._registrations):
            await registration.stop()
        self._registrations.clear()
        await self.disconnect()
