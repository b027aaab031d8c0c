"""Sortable 26-character identifiers (ULID).

48-bit millisecond timestamp followed by 80 random bits, Crockford base32.
Identifiers generated by one process are strictly increasing.
"""

from __future__ import annotations

import hashlib
import secrets
import threading
import time
from datetime import datetime, timezone

ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ID_LENGTH = 26

_RANDOM_BITS = 80
_RANDOM_MAX = (1 << _RANDOM_BITS) - 1
_DECODE = {c: i for i, c in enumerate(ALPHABET)}


def _encode(timestamp_ms: int, randomness: int) -> str:
    value = (timestamp_ms << _RANDOM_BITS) | randomness
    chars = []
    for _ in range(ID_LENGTH):
        chars.append(ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


class IdGenerator:
    """Monotonic ULID source. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_random = 0

    def new(self) -> str:
        with self._lock:
            now_ms = time.time_ns() // 1_000_000
            if now_ms <= self._last_ms:
                # Same millisecond (or clock went back): bump the random part
                now_ms = self._last_ms
                randomness = self._last_random + 1
                if randomness > _RANDOM_MAX:
                    now_ms += 1
                    randomness = secrets.randbits(_RANDOM_BITS - 1)
            else:
                randomness = secrets.randbits(_RANDOM_BITS - 1)
            self._last_ms = now_ms
            self._last_random = randomness
            return _encode(now_ms, randomness)


_default = IdGenerator()


def new_id() -> str:
    """Return a fresh identifier from the process-wide generator."""
    return _default.new()


def derive_id(timestamp_ms: int, seed: str) -> str:
    """Stable identifier for a file that carries none of its own."""
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    randomness = int.from_bytes(digest[:10], "big")
    return _encode(timestamp_ms & ((1 << 48) - 1), randomness)


def is_valid_id(value: object) -> bool:
    if not isinstance(value, str) or len(value) != ID_LENGTH:
        return False
    if value[0] > "7":
        return False
    return all(c in _DECODE for c in value)


def id_timestamp(value: str) -> datetime:
    """Creation time encoded in an identifier."""
    ms = 0
    for c in value[:10]:
        ms = (ms << 5) | _DECODE[c]
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
