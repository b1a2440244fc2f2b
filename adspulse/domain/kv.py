from __future__ import annotations

from threading import Lock
from typing import Protocol


class ExpiringKeyStore(Protocol):
    """Key -> expiry (epoch ms) map. A distributed cache can stand in for the
    in-process implementation as long as set_if_absent stays atomic."""

    def set_if_absent(self, key: str, expires_at_ms: int, now_ms: int) -> tuple[bool, int]: ...

    def purge_expired(self, now_ms: int) -> int: ...

    def clear(self) -> None: ...


class InMemoryExpiringKeyStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[str, int] = {}

    def set_if_absent(self, key: str, expires_at_ms: int, now_ms: int) -> tuple[bool, int]:
        """Store key unless an unexpired entry exists.

        Returns (created, effective_expiry). An existing live entry keeps its
        original expiry.
        """
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and existing > now_ms:
                return False, existing
            self._entries[key] = expires_at_ms
            return True, expires_at_ms

    def purge_expired(self, now_ms: int) -> int:
        with self._lock:
            expired = [key for key, expiry in self._entries.items() if expiry <= now_ms]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
