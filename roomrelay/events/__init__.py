"""roomrelay -- Entry model, codec, and room codes."""

from roomrelay.events.entry import (
    PAYLOAD_FIELD,
    ROOM_CODE_FIELD,
    TIMESTAMP_FIELD,
    DecodeError,
    Entry,
    decode_entry,
    encode_entry,
    entry_to_document,
    utc_now,
)
from roomrelay.events.room_code import RoomCodeGenerator, normalize_room_code

__all__: list[str] = [
    "DecodeError",
    "Entry",
    "PAYLOAD_FIELD",
    "ROOM_CODE_FIELD",
    "RoomCodeGenerator",
    "TIMESTAMP_FIELD",
    "decode_entry",
    "encode_entry",
    "entry_to_document",
    "normalize_room_code",
    "utc_now",
]
