"""
roomrelay -- Redis Streams document store.

Each collection is one Redis stream.  Documents are stream entries (flat
string hashes) and document ids are the Redis-assigned entry ids.

Live queries:
    - On open, the (capped) stream is scanned once with ``XRANGE`` and the
      matching entries are delivered as the initial batch.  The scan starts
      at the stream id of the query's lower bound minus ``scan_skew_ms``, so
      its cost follows the number of recent entries rather than the stream
      length.  An entry whose writer clock ran more than ``scan_skew_ms``
      behind the server when it was appended is not seen by the scan.
    - The listener then follows the stream with blocking ``XREAD`` from the
      last entry id it has seen, delivering the matching entries of every
      read as one batch.
    - Filtering (room code, timestamp lower bound) and ordering happen
      client side; stream ids are server time, timestamps are writer time.

There is no consumer group: every listener sees every entry.  Any Redis
error terminates the listener task, which is how faults surface to the
relay.  Listeners never retry.

Usage:
    store = RedisDocumentStore("redis://localhost:6379")
    await store.connect()
    doc_id = await store.append("Messages", {"roomCode": "ABCD", ...})
    await store.disconnect()
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, TimeoutError

from roomrelay.store.base import (
    Batch,
    BatchCallback,
    DocumentStore,
    ListenerRegistration,
    LiveQuery,
)

logger = logging.getLogger(__name__)


class _StreamListener(ListenerRegistration):
    """``XRANGE`` snapshot followed by a blocking ``XREAD`` loop."""

    def __init__(
        self,
        store: RedisDocumentStore,
        query: LiveQuery,
        callback: BatchCallback,
    ) -> None:
        super().__init__(query, callback)
        self._store = store
        self.last_id: str = "0-0"

    def scan_start(self) -> str:
        """First stream id of the initial scan (``"-"`` when unbounded)."""
        if self.query.bound is None:
            return "-"
        bound_ms = int(self.query.bound.timestamp() * 1000)
        return str(max(bound_ms - self._store.scan_skew_ms, 0))

    async def _listen(self) -> None:
        r = self._store.redis
        stream = self.query.collection

        try:
            snapshot = await r.xrange(
                name=stream, min=self.scan_start(), max="+", count=self._store.maxlen
            )
            if snapshot:
                self.last_id = snapshot[-1][0]
            await self._deliver(self.query.select(list(snapshot)))

            while not self.stop_requested:
                response = await r.xread(
                    streams={stream: self.last_id},
                    count=self._store.batch_size,
                    block=self._store.block_ms,
                )
                if not response:
                    continue

                # response format: [[stream_name, [(msg_id, data), ...]]]
                batch: Batch = []
                for _stream_name, stream_messages in response:
                    for msg_id, data in stream_messages:
                        batch.append((msg_id, data))
                if not batch:
                    continue
                self.last_id = batch[-1][0]

                logger.debug(
                    "Read %d entries from %s (last_id=%s)",
                    len(batch),
                    stream,
                    self.last_id,
                )
                await self._deliver(self.query.select(batch))

        except (RedisConnectionError, TimeoutError) as exc:
            logger.error("Live query on %s lost its connection: %s", stream, exc)
            raise
        except ResponseError as exc:
            logger.error("Redis protocol error on live query %s: %s", stream, exc)
            raise


class RedisDocumentStore(DocumentStore):
    """Redis Streams backed :class:`DocumentStore`.

    Args:
        redis_url: Redis connection URL, e.g. ``"redis://localhost:6379"``.
        maxlen: Approximate cap on every stream (``XADD MAXLEN ~``).  Also
            bounds the initial ``XRANGE`` scan of a live query.
        block_ms: How long one ``XREAD`` blocks waiting for new entries.
        batch_size: Maximum entries fetched per ``XREAD``.
        scan_skew_ms: How far before the query bound (in stream time) the
            initial scan starts.  Covers writer/server clock skew.
        instance_id: Identifier of this process, stamped on appended entries.
    """

    def __init__(
        self,
        redis_url: str,
        maxlen: int = 5000,
        block_ms: int = 5000,
        batch_size: int = 100,
        scan_skew_ms: int = 60_000,
        instance_id: str = "relay-1",
    ) -> None:
        super().__init__()
        self._redis: Optional[redis.Redis] = None
        self._redis_url: str = redis_url
        self.maxlen: int = maxlen
        self.block_ms: int = block_ms
        self.batch_size: int = batch_size
        self.scan_skew_ms: int = scan_skew_ms
        self._instance_id: str = instance_id

    # -- lifecycle -----------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    async def connect(self) -> None:
        """Establish connection to Redis.

        Creates a connection pool with ``decode_responses=True`` so all
        values come back as Python ``str`` (not ``bytes``).

        Raises:
            RedisConnectionError: If the initial connection attempt fails.
        """
        if self._redis is not None:
            logger.debug("RedisDocumentStore already connected, skipping")
            return

        try:
            self._redis = redis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_keepalive=True,
                health_check_interval=30,
            )
            await self._redis.ping()
            logger.info(
                "RedisDocumentStore connected to %s [instance=%s]",
                self._redis_url,
                self._instance_id,
            )
        except (RedisConnectionError, TimeoutError, OSError) as exc:
            logger.error(
                "RedisDocumentStore failed to connect to %s: %s",
                self._redis_url,
                exc,
            )
            self._redis = None
            raise

    async def disconnect(self) -> None:
        """Close the Redis connection pool gracefully."""
        if self._redis is not None:
            try:
                await self._redis.aclose()
                logger.info(
                    "RedisDocumentStore disconnected [instance=%s]",
                    self._instance_id,
                )
            except Exception as exc:
                logger.warning("Error during RedisDocumentStore disconnect: %s", exc)
            finally:
                self._redis = None

    async def clear_persistence(self) -> None:
        # Reads always go to the server; there is no client-side document cache.
        logger.debug("RedisDocumentStore has no local cache to clear")

    @property
    def redis(self) -> redis.Redis:
        """Return the underlying ``redis.asyncio.Redis`` client.

        Raises:
            RuntimeError: If :meth:`connect` has not been called.
        """
        if self._redis is None:
            raise RuntimeError(
                "RedisDocumentStore is not connected. Call connect() first."
            )
        return self._redis

    # -- documents -----------------------------------------------------------

    async def append(self, collection: str, document: Mapping[str, Any]) -> str:
        """Append a document to the *collection* stream via ``XADD``.

        Nested values are JSON-encoded so the entry stays a flat hash.

        Returns:
            The Redis-assigned entry id (e.g. ``"1704067200000-0"``).
        """
        r = self.redis

        flat_data: dict[str, str] = {}
        for key, value in document.items():
            if isinstance(value, (dict, list)):
                flat_data[key] = json.dumps(value)
            elif isinstance(value, bool):
                flat_data[key] = "true" if value else "false"
            elif value is None:
                flat_data[key] = ""
            else:
                flat_data[key] = str(value)
        flat_data["_relay_instance"] = self._instance_id

        try:
            msg_id: str = await r.xadd(
                name=collection,
                fields=flat_data,
                maxlen=self.maxlen,
                approximate=True,
            )
            logger.debug("Appended to %s: msg_id=%s", collection, msg_id)
            return msg_id
        except (RedisConnectionError, TimeoutError) as exc:
            logger.error("Append to %s failed: %s", collection, exc)
            raise
        except ResponseError as exc:
            logger.error("Redis protocol error appending to %s: %s", collection, exc)
            raise

    def _open_listener(self, query: LiveQuery, callback: BatchCallback) -> ListenerRegistration:
        # Fail fast when not connected rather than inside the task
        _ = self.redis
        return _StreamListener(self, query, callback)

