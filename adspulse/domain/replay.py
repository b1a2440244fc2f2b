from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from adspulse.config import settings
from adspulse.domain.kv import ExpiringKeyStore, InMemoryExpiringKeyStore


@dataclass(frozen=True)
class ReplayRegistration:
    duplicate: bool
    expires_at_ms: int


def _now_ms() -> int:
    return int(time.time() * 1000)


def build_replay_key(provider: str, event_type: str, source_id: str | None) -> str:
    if source_id:
        return f"{provider}:{event_type}:{source_id}"
    return f"{provider}:{event_type}"


class ReplayGuard:
    """Fixed-window duplicate detection keyed by idempotency key.

    The window starts at the first sighting of a key and is never extended by
    later duplicates.
    """

    def __init__(
        self,
        store: ExpiringKeyStore | None = None,
        *,
        default_window_ms: int | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store or InMemoryExpiringKeyStore()
        self._default_window_ms = default_window_ms
        self._clock = clock

    @property
    def default_window_ms(self) -> int:
        if self._default_window_ms is not None:
            return self._default_window_ms
        return max(1, int(settings.webhook_replay_window_seconds)) * 1000

    def register(self, key: str, window_ms: int | None = None) -> ReplayRegistration:
        now_ms = self._clock()
        self._store.purge_expired(now_ms)
        window = self.default_window_ms if window_ms is None else max(1, int(window_ms))
        created, expires_at_ms = self._store.set_if_absent(key, now_ms + window, now_ms)
        return ReplayRegistration(duplicate=not created, expires_at_ms=expires_at_ms)

    def clear(self) -> None:
        self._store.clear()


_replay_guard = ReplayGuard()


def get_replay_guard() -> ReplayGuard:
    return _replay_guard


def register_replay_key(key: str, window_ms: int | None = None) -> ReplayRegistration:
    return _replay_guard.register(key, window_ms)


def clear_replay_keys() -> None:
    _replay_guard.clear()
