"""Pytest configuration and shared fixtures."""
import asyncio
import os
import sys
from datetime import datetime, timezone

import pytest
import pytest_asyncio

# Ensure the project root is on sys.path so 'roomrelay' is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from roomrelay.events.entry import encode_entry, entry_to_document
from roomrelay.store.memory import InMemoryDocumentStore


def ts(seconds: float) -> datetime:
    """Unix seconds -> aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def doc(room: str, seconds: float, payload: str) -> dict:
    """Store document for an entry at Unix time *seconds*."""
    return entry_to_document(encode_entry(room, payload, now=ts(seconds)))


@pytest.fixture
def make_doc():
    return doc


@pytest.fixture
def at():
    return ts


@pytest_asyncio.fixture
async def store():
    s = InMemoryDocumentStore()
    await s.connect()
    yield s
    await s.terminate()


@pytest.fixture
def settle():
    """Let background listener tasks run for a few loop iterations."""

    async def _settle(rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle


@pytest.fixture
def wait_until():
    """Poll *predicate* until true, failing after *timeout* seconds."""

    async def _wait_until(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.001)

    return _wait_until


class RefusingReopenStore(InMemoryDocumentStore):
    """Opens the first live query, refuses every later one."""

    def __init__(self) -> None:
        super().__init__()
        self.opens = 0

    def _open_listener(self, query, callback):
        self.opens += 1
        if self.opens > 1:
            raise RuntimeError("query open refused")
        return super()._open_listener(query, callback)


@pytest_asyncio.fixture
async def refusing_store():
    s = RefusingReopenStore()
    await s.connect()
    yield s
    await s.terminate()
