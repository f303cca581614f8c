"""In-flight registry: correlates message ids with native broker handles.

Entries are added when a message is delivered in peek-lock mode and removed
exactly once on confirm, dead-letter or disposal. The pump may deliver from a
broker-managed thread, so every access goes through a threading lock.
"""
from __future__ import annotations

import threading
from typing import Any, Generic, TypeVar

from loguru import logger

HandleT = TypeVar("HandleT")


class InFlightRegistry(Generic[HandleT]):
    """Thread-safe id -> handle mapping with atomic, idempotent removal."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, HandleT] = {}

    def add(self, message_id: str, handle: HandleT) -> None:
        with self._lock:
            replaced = message_id in self._entries
            self._entries[message_id] = handle
        if replaced:
            logger.warning("in-flight message {} redelivered; replacing its handle", message_id)

    def pop(self, message_id: str) -> HandleT | None:
        """Remove and return the handle for `message_id`, or None if it was not tracked."""
        with self._lock:
            return self._entries.pop(message_id, None)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> list[HandleT]:
        with self._lock:
            handles = list(self._entries.values())
            self._entries.clear()
        return handles

    def __contains__(self, message_id: Any) -> bool:
        with self._lock:
            return message_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
