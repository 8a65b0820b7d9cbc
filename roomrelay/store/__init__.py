"""roomrelay -- Document store collaborators.

Quick start::

    from roomrelay.store import RedisDocumentStore, LiveQuery

    store = RedisDocumentStore("redis://localhost:6379")
    await store.connect()

    query = LiveQuery("Messages").where_equal("roomCode", "ABCD")
    registration = store.listen(query, on_batch)
    ...
    await registration.stop()
"""

from roomrelay.store.base import (
    Batch,
    BatchCallback,
    ConnectFault,
    DocumentStore,
    ListenerRegistration,
    LiveQuery,
    to_instant,
)
from roomrelay.store.memory import InMemoryDocumentStore
from roomrelay.store.redis_streams import RedisDocumentStore

__all__: list[str] = [
    "Batch",
    "BatchCallback",
    "ConnectFault",
    "DocumentStore",
    "InMemoryDocumentStore",
    "ListenerRegistration",
    "LiveQuery",
    "RedisDocumentStore",
    "to_instant",
]
