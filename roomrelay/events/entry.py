"""
Relay entry model and its store document codec.

An :class:`Entry` is the unit of relay traffic.  In the store it lives as a
flat string document (the shape of a Redis stream entry)::

    {
        "roomCode":  "ABCD",
        "timestamp": "2024-01-01T12:00:00.123456+00:00",
        "payload":   "hello",
    }

``timestamp`` is the *only* order imposed on entries within a room.  It
is stamped by the writer and never updated in place.

Decoding is strict about shape: a document with a missing field, a
non-string room code / payload, or an unparseable timestamp raises
:class:`DecodeError`.  Batch loops skip such documents rather than abort.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

# Document keys -- shared by writer, reader and store query filters
ROOM_CODE_FIELD: str = "roomCode"
TIMESTAMP_FIELD: str = "timestamp"
PAYLOAD_FIELD: str = "payload"


class DecodeError(Exception):
    """Raised when a store document cannot be projected into an Entry."""

    def __init__(self, reason: str, doc_id: Optional[str] = None) -> None:
        self.reason = reason
        self.doc_id = doc_id
        where = f" (doc_id={doc_id})" if doc_id else ""
        super().__init__(f"Malformed relay entry{where}: {reason}")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class Entry(BaseModel):
    """One relay message.

    Field semantics:
        room_code:
            Opaque room identifier.  Filtering is an exact string match,
            so writers and readers must agree on case (upper case).

        timestamp:
            Write-time clock value.  Always timezone-aware; naive values
            are taken to be UTC.

        payload:
            Application content.  Not validated by the relay.
    """

    room_code: str = Field(alias=ROOM_CODE_FIELD, min_length=1, strict=True)
    timestamp: datetime = Field(alias=TIMESTAMP_FIELD)
    payload: str = Field(alias=PAYLOAD_FIELD, strict=True)

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

def encode_entry(
    room_code: str,
    payload: str,
    now: Optional[datetime] = None,
) -> Entry:
    """Build an Entry for *room_code*, stamped with *now* (default: UTC now)."""
    return Entry(
        room_code=room_code,
        timestamp=now if now is not None else utc_now(),
        payload=payload,
    )


def entry_to_document(entry: Entry) -> dict[str, str]:
    """Flatten an Entry into the store's native document shape."""
    return {
        ROOM_CODE_FIELD: entry.room_code,
        TIMESTAMP_FIELD: entry.timestamp.isoformat(),
        PAYLOAD_FIELD: entry.payload,
    }


def decode_entry(document: Mapping[str, Any], doc_id: Optional[str] = None) -> Entry:
    """Project a store document into an Entry.

    ``timestamp`` may be an ISO 8601 string, a ``datetime`` or a Unix epoch
    (number or numeric string).  Unknown keys (e.g. store metadata) are
    ignored.

    Raises:
        DecodeError: If a required field is missing or has the wrong shape.
    """
    missing = [
        key
        for key in (ROOM_CODE_FIELD, TIMESTAMP_FIELD, PAYLOAD_FIELD)
        if key not in document
    ]
    if missing:
        raise DecodeError(f"missing field(s) {missing}", doc_id=doc_id)

    try:
        return Entry.model_validate(dict(document))
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        raise DecodeError(errors, doc_id=doc_id) from exc
