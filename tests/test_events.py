"""Tests for the entry codec and room code generation."""
import random
from datetime import datetime, timezone

import pytest

from roomrelay.events.entry import (
    PAYLOAD_FIELD,
    ROOM_CODE_FIELD,
    TIMESTAMP_FIELD,
    DecodeError,
    Entry,
    decode_entry,
    encode_entry,
    entry_to_document,
)
from roomrelay.events.room_code import RoomCodeGenerator, normalize_room_code


class TestRoomCodeGenerator:
    def test_default_code_shape(self):
        code = RoomCodeGenerator().generate()
        assert len(code) == 4
        assert code.isalpha() and code.isupper()

    def test_custom_alphabet_and_length(self):
        gen = RoomCodeGenerator(alphabet="XY", length=10)
        code = gen.generate()
        assert len(code) == 10
        assert set(code) <= {"X", "Y"}

    def test_seeded_rng_is_reproducible(self):
        a = RoomCodeGenerator(rng=random.Random(42)).generate()
        b = RoomCodeGenerator(rng=random.Random(42)).generate()
        assert a == b

    def test_rejects_empty_alphabet(self):
        with pytest.raises(ValueError):
            RoomCodeGenerator(alphabet="")

    def test_rejects_non_positive_length(self):
        with pytest.raises(ValueError):
            RoomCodeGenerator(length=0)

    def test_normalize(self):
        assert normalize_room_code("  abcd ") == "ABCD"


class TestEntryCodec:
    def test_encode_stamps_current_time(self):
        before = datetime.now(timezone.utc)
        entry = encode_entry("ABCD", "hello")
        after = datetime.now(timezone.utc)
        assert entry.room_code == "ABCD"
        assert entry.payload == "hello"
        assert before <= entry.timestamp <= after

    def test_encode_with_explicit_time(self, at):
        entry = encode_entry("ABCD", "x", now=at(150))
        assert entry.timestamp == at(150)

    def test_document_shape(self, at):
        document = entry_to_document(encode_entry("ABCD", "x", now=at(150)))
        assert set(document) == {ROOM_CODE_FIELD, TIMESTAMP_FIELD, PAYLOAD_FIELD}
        assert document[ROOM_CODE_FIELD] == "ABCD"
        assert document[PAYLOAD_FIELD] == "x"
        assert isinstance(document[TIMESTAMP_FIELD], str)

    def test_document_decodes_back(self, at):
        original = encode_entry("ABCD", "x", now=at(150.25))
        assert decode_entry(entry_to_document(original)) == original

    def test_decode_ignores_store_metadata(self, make_doc):
        document = make_doc("ABCD", 100, "x")
        document["_relay_instance"] = "relay-1"
        assert decode_entry(document).payload == "x"

    def test_decode_accepts_datetime_and_epoch(self, at):
        from_dt = decode_entry({"roomCode": "A", "timestamp": at(100), "payload": "p"})
        from_epoch = decode_entry({"roomCode": "A", "timestamp": 100, "payload": "p"})
        assert from_dt.timestamp == from_epoch.timestamp == at(100)

    def test_naive_timestamp_is_utc(self):
        entry = decode_entry(
            {"roomCode": "A", "timestamp": "2024-01-01T12:00:00", "payload": "p"}
        )
        assert entry.timestamp.tzinfo is not None
        assert entry.timestamp.utcoffset().total_seconds() == 0

    def test_missing_field_raises(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_entry({"roomCode": "A", "payload": "p"}, doc_id="doc-7")
        assert "timestamp" in str(exc_info.value)
        assert exc_info.value.doc_id == "doc-7"

    def test_wrong_shape_raises(self, at):
        with pytest.raises(DecodeError):
            decode_entry({"roomCode": "A", "timestamp": "not a time", "payload": "p"})
        with pytest.raises(DecodeError):
            decode_entry({"roomCode": "A", "timestamp": at(1), "payload": 42})
        with pytest.raises(DecodeError):
            decode_entry({"roomCode": "", "timestamp": at(1), "payload": "p"})

    def test_entry_is_immutable(self, at):
        entry = Entry(room_code="A", timestamp=at(1), payload="p")
        with pytest.raises(Exception):
            entry.payload = "changed"
