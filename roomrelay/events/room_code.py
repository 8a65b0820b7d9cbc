"""Room code generation.

A room code is a short random string partitioning the shared collection
into independent logical channels.  Codes are not cryptographically
secure and collisions between concurrently open rooms are accepted.
"""

from __future__ import annotations

import random
from typing import Optional

DEFAULT_ALPHABET: str = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
DEFAULT_LENGTH: int = 4


def normalize_room_code(room_code: str) -> str:
    """Canonical form shared by writers and readers (stripped, upper case)."""
    return room_code.strip().upper()


class RoomCodeGenerator:
    """Draws fixed-length codes uniformly from a fixed alphabet.

    Args:
        alphabet: Characters a code may contain.
        length: Number of characters per code.
        rng: Optional ``random.Random`` instance (seed it for reproducible
            codes in tests).
    """

    def __init__(
        self,
        alphabet: str = DEFAULT_ALPHABET,
        length: int = DEFAULT_LENGTH,
        rng: Optional[random.Random] = None,
    ) -> None:
        if not alphabet:
            raise ValueError("Room code alphabet must not be empty")
        if length <= 0:
            raise ValueError(f"Room code length must be positive, got {length}")
        self._alphabet: str = alphabet
        self._length: int = length
        self._rng: random.Random = rng or random.Random()

    @property
    def length(self) -> int:
        return self._length

    def generate(self) -> str:
        return "".join(
            self._rng.choice(self._alphabet) for _ in range(self._length)
        )

    def __repr__(self) -> str:
        return (
            f"RoomCodeGenerator(alphabet={self._alphabet!r}, "
            f"length={self._length})"
        )
