"""
roomrelay -- Producer write path.

Writers do not go through :class:`RelayService`; they append an
Entry-shaped document straight to the store.  The room code is upper-cased
so it matches readers' exact-match filter.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from roomrelay.events.entry import encode_entry, entry_to_document
from roomrelay.events.room_code import normalize_room_code
from roomrelay.store.base import DocumentStore

logger = logging.getLogger(__name__)


async def append_message(
    store: DocumentStore,
    room_code: str,
    payload: str,
    collection: str = "Messages",
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Append one message to *room_code*, stamped with the current time.

    Failures are logged and reported as ``None`` rather than raised.

    Returns:
        The new document id, or ``None`` if the append failed.
    """
    try:
        entry = encode_entry(normalize_room_code(room_code), payload, now=now)
        doc_id = await store.append(collection, entry_to_document(entry))
    except Exception as exc:
        logger.error(
            "Failed to append message to room %r in %s: %s",
            room_code,
            collection,
            exc,
            exc_info=True,
        )
        return None

    logger.debug("Added doc [ %s ] to room %s", doc_id, entry.room_code)
    return doc_id
