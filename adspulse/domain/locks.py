from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Iterator


class KeyBusyError(Exception):
    def __init__(self, key: str) -> None:
        super().__init__(f"'{key}' is already held")
        self.key = key


class KeyedTryLock:
    """Non-blocking mutual exclusion per key."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._held: set[str] = set()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            if key in self._held:
                raise KeyBusyError(key)
            self._held.add(key)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(key)
