"""
roomrelay -- Watermark subscription.

Owns one live query on the store::

    roomCode == R  AND  timestamp >= watermark  ORDER BY timestamp ASC

and the watermark itself.  Every delivered batch is filtered against the
watermark; entries strictly newer than it are emitted, and when the batch
moved the watermark forward the live query is closed and reopened from the
new watermark (a live query's bound is fixed when it is opened).

Because the bound is inclusive, a reopened query re-delivers the entry
sitting exactly on the watermark.  ``timestamp <= watermark`` is therefore
treated as stale, which absorbs that re-delivery without emitting it
twice.

Concurrency:
    ``start``, ``stop`` and the restart path of ``on_batch`` all take the
    per-subscription lock, so the tick loop and the batch-delivery task
    never interleave inside them.  Only one handle is open at a time: the
    old one is stopped before the new one is opened.

Guarantees:
    - The watermark never decreases over the lifetime of the instance.
    - Within one batch, entries are emitted in delivery (timestamp) order.
    - Nothing at or before the current watermark is ever emitted.
    Duplicates across independent readers are expected; there is no
    acknowledgment.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from roomrelay.events.entry import (
    ROOM_CODE_FIELD,
    TIMESTAMP_FIELD,
    DecodeError,
    Entry,
    decode_entry,
)
from roomrelay.observability.metrics import RelayMetrics
from roomrelay.store.base import Batch, DocumentStore, ListenerRegistration, LiveQuery, to_instant

logger = logging.getLogger(__name__)


class WatermarkSubscription:
    """Live query plus monotonic watermark for one room.

    Args:
        store: Connected :class:`DocumentStore`.
        collection: Collection holding relay entries.
        room_code: Room to follow (exact match).
        on_entry: Called synchronously with every accepted :class:`Entry`.
        metrics: Optional :class:`RelayMetrics`.
        verbose: Log per-batch / per-entry / restart traces at INFO.
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        room_code: str,
        on_entry: Callable[[Entry], Any],
        metrics: Optional[RelayMetrics] = None,
        verbose: bool = False,
    ) -> None:
        self._store: DocumentStore = store
        self._collection: str = collection
        self._room_code: str = room_code
        self._on_entry: Callable[[Entry], Any] = on_entry
        self._metrics: Optional[RelayMetrics] = metrics
        self._verbose: bool = verbose

        self._watermark: Optional[datetime] = None
        self._handle: Optional[ListenerRegistration] = None
        self._reopen_error: Optional[Exception] = None
        self._lock: asyncio.Lock = asyncio.Lock()

        self.stats: dict[str, int] = {
            "batches": 0,
            "delivered": 0,
            "stale": 0,
            "decode_errors": 0,
            "restarts": 0,
        }

    # -- introspection -------------------------------------------------------

    @property
    def room_code(self) -> str:
        return self._room_code

    @property
    def watermark(self) -> Optional[datetime]:
        return self._watermark

    @property
    def handle(self) -> Optional[ListenerRegistration]:
        return self._handle

    @property
    def collection(self) -> str:
        return self._collection

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    @property
    def reopen_error(self) -> Optional[Exception]:
        """Error from a failed restart, cleared by :meth:`start` and :meth:`stop`."""
        return self._reopen_error

    def build_query(self, watermark: datetime) -> LiveQuery:
        return (
            LiveQuery(self._collection)
            .where_equal(ROOM_CODE_FIELD, self._room_code)
            .where_at_least(TIMESTAMP_FIELD, watermark)
            .order_by(TIMESTAMP_FIELD)
        )

    # -- lifecycle -----------------------------------------------------------

    async def start(self, initial_watermark: datetime) -> None:
        """Set the watermark and open the live query.

        The watermark only moves forward: restarting a stopped subscription
        with an older instant keeps the current watermark.

        Raises:
            RuntimeError: If a handle is already open (call :meth:`stop`
                first).
        """
        async with self._lock:
            if self._handle is not None:
                raise RuntimeError(
                    f"Subscription for room {self._room_code} is already open"
                )
            initial = to_instant(initial_watermark)
            if initial is None:
                raise ValueError(f"Not an instant: {initial_watermark!r}")
            if self._watermark is None or initial > self._watermark:
                self._watermark = initial
            self._reopen_error = None
            self._open()

    async def stop(self) -> None:
        """Stop the live query and wait for its task.  Idempotent."""
        async with self._lock:
            self._reopen_error = None
            await self._close()

    # -- batch handling ------------------------------------------------------

    async def on_batch(self, batch: Batch) -> list[Entry]:
        """Handle one delivery from the live query.

        Returns the entries that were emitted.
        """
        async with self._lock:
            if self._watermark is None:
                raise RuntimeError("on_batch called before start()")
            if self._handle is None:
                # Stopped while this delivery was waiting for the lock
                logger.debug(
                    "Dropping batch of %d for stopped room %s",
                    len(batch),
                    self._room_code,
                )
                return []

            self.stats["batches"] += 1
            self._trace("Callback received batch of %d document(s)", len(batch))

            watermark = self._watermark
            candidate = watermark
            emitted: list[Entry] = []

            for doc_id, document in batch:
                try:
                    entry = decode_entry(document, doc_id=doc_id)
                except DecodeError as exc:
                    self.stats["decode_errors"] += 1
                    if self._metrics is not None:
                        self._metrics.decode_errors.labels(room=self._room_code).inc()
                    logger.warning("Skipping undecodable entry: %s", exc)
                    continue

                if entry.timestamp <= watermark:
                    self.stats["stale"] += 1
                    if self._metrics is not None:
                        self._metrics.entries_stale.labels(room=self._room_code).inc()
                    continue

                self._trace(
                    "Handle new message id [%s] at [%s] [%s]",
                    doc_id,
                    entry.timestamp.isoformat(),
                    entry.payload,
                )
                self._on_entry(entry)
                emitted.append(entry)
                self.stats["delivered"] += 1
                if self._metrics is not None:
                    self._metrics.messages_delivered.labels(room=self._room_code).inc()
                if entry.timestamp > candidate:
                    candidate = entry.timestamp

            if candidate > watermark:
                self._trace(
                    "Advancing watermark %s -> %s, restarting live query",
                    watermark.isoformat(),
                    candidate.isoformat(),
                )
                await self._close()
                self._watermark = candidate
                try:
                    self._open()
                except Exception as exc:
                    # Left closed; the fault monitor reports it on its next tick
                    self._reopen_error = exc
                    logger.error(
                        "Could not reopen live query for room [%s] from %s: %s",
                        self._room_code,
                        candidate.isoformat(),
                        exc,
                    )
                    return emitted
                self.stats["restarts"] += 1
                if self._metrics is not None:
                    self._metrics.subscription_restarts.labels(room=self._room_code).inc()

            return emitted

    # -- internals (lock held) -----------------------------------------------

    def _open(self) -> None:
        assert self._watermark is not None
        self._handle = self._store.listen(
            self.build_query(self._watermark), self.on_batch
        )
        if self._metrics is not None:
            self._metrics.observe_watermark(self._room_code, self._watermark)
        self._trace(
            "Listening on %s for room [%s] from %s",
            self._collection,
            self._room_code,
            self._watermark.isoformat(),
        )

    async def _close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None and not handle.done():
            await handle.stop()

    def _trace(self, msg: str, *args: Any) -> None:
        if self._verbose:
            logger.info(msg, *args)
