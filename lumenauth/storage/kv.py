from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Protocol, Tuple


class KVStore(Protocol):
    """Ephemeral key/value store with TTLs and atomic primitives.

    Every mutation the engine performs maps onto exactly one of these calls so
    that backends can make it atomic (a Lua script or a single command on
    Redis, a lock on the in-memory store). Expired keys behave as missing.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def replace(self, key: str, value: str) -> bool:
        """Overwrite an existing key, keeping its TTL. False when missing."""
        ...

    async def delete(self, key: str) -> None: ...

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete."""
        ...

    async def pop_if_equals(self, key: str, expected: str) -> bool:
        """Atomically delete ``key`` only when it holds ``expected``."""
        ...

    async def incr_below(self, key: str, limit: int, ttl_seconds: int) -> Optional[int]:
        """Increment unless the value already reached ``limit``.

        Returns the new value, or ``None`` when the limit was reached and
        nothing changed.
        """
        ...

    async def close(self) -> None: ...


def session_key(token: str) -> str:
    return f"authz:session:{token}"


def counter_key(purpose: str, subject: str, ip: str) -> str:
    return f"counter:{purpose}:{subject}:{ip}"


def mfa_code_key(channel: str, token: str) -> str:
    return f"mfa:code:{channel}:{token}"


def refresh_token_key(token: str) -> str:
    return f"oauth:refresh:{token}"


def passkey_challenge_key(challenge_id: str) -> str:
    return f"passkey:challenge:{challenge_id}"


SIGNING_KEYS_KEY = "oauth:signing_keys"


class MemoryKV:
    """In-process KVStore for tests and single-node development.

    A plain thread lock guards every operation; none of them await while the
    lock is held, so concurrent coroutines and TestClient threads see each
    call as atomic.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _now() -> float:
        return time.monotonic()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._now() + max(1, int(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expiry(ttl_seconds))

    async def replace(self, key: str, value: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (value, entry[1])
            return True

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._data[key]
            return entry[0]

    async def pop_if_equals(self, key: str, expected: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            del self._data[key]
            return True

    async def incr_below(self, key: str, limit: int, ttl_seconds: int) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            current = int(entry[0]) if entry else 0
            if current >= limit:
                return None
            value = current + 1
            self._data[key] = (str(value), self._expiry(ttl_seconds))
            return value

    async def close(self) -> None:
        with self._lock:
            self._data.clear()

    def expire_now(self, key: str) -> None:
        """Force a key to lapse, used by tests to simulate TTL expiry."""
        with self._lock:
            entry = self._data.get(key)
            if entry is not None:
                self._data[key] = (entry[0], self._now() - 1)


__all__ = [
    "KVStore",
    "MemoryKV",
    "SIGNING_KEYS_KEY",
    "counter_key",
    "mfa_code_key",
    "passkey_challenge_key",
    "refresh_token_key",
    "session_key",
]
