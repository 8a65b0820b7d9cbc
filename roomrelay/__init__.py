"""roomrelay -- room-scoped message relay over a live document store.

Writers append ``{roomCode, timestamp, payload}`` documents to a shared
collection; every reader subscribed to the same room code sees every entry
newer than its own watermark.  There is no acknowledgment and no
single-consumer guarantee.

Quick start::

    from roomrelay.relay import RelayService
    from roomrelay.store import RedisDocumentStore

    service = RelayService(RedisDocumentStore("redis://localhost:6379"))
    service.on_ready.subscribe(lambda code: print("room", code))
    service.on_message.subscribe(print)
    await service.run(shutdown_event)
"""

__version__ = "1.0.0"
