"""Session registry and cancellation tokens.

The registry is the only mutable state shared between concurrent callers:
sessions register themselves when they start, cancel requests look them up,
and sessions remove themselves when they finish. All access goes through a
lock so it is safe from the event loop and from executor threads alike.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal, optionally linked to a parent token.

    Cancelling the parent cancels every child. Callbacks registered after
    cancellation run immediately.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], object]] = []
        self._lock = threading.Lock()
        if parent is not None:
            parent.register(self.cancel)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def register(self, callback: Callable[[], object]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")


class SessionRegistry(Generic[T]):
    """Thread-safe id -> handle mapping.

    Removal is idempotent: popping an id that is absent returns None.
    """

    def __init__(self, name: str = "sessions") -> None:
        self.name = name
        self._entries: dict[str, T] = {}
        self._lock = threading.Lock()

    def add(self, key: str, handle: T) -> None:
        with self._lock:
            if key in self._entries:
                raise KeyError(f"{self.name}: '{key}' is already registered")
            self._entries[key] = handle
        logger.debug("%s: registered %s", self.name, key)

    def get(self, key: str) -> T | None:
        with self._lock:
            return self._entries.get(key)

    def pop(self, key: str) -> T | None:
        with self._lock:
            handle = self._entries.pop(key, None)
        if handle is not None:
            logger.debug("%s: removed %s", self.name, key)
        return handle

    def remove(self, key: str) -> bool:
        return self.pop(key) is not None

    def discard(self, key: str, handle: T) -> bool:
        """Remove ``key`` only while it still maps to ``handle``."""
        with self._lock:
            if self._entries.get(key) is not handle:
                return False
            del self._entries[key]
        logger.debug("%s: removed %s", self.name, key)
        return True

    def drain(self) -> list[tuple[str, T]]:
        """Remove and return every entry."""
        with self._lock:
            items = list(self._entries.items())
            self._entries.clear()
        return items

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())
