"""Fixed-size batching buffer for memory candidates."""

from __future__ import annotations

import logging
import threading
from typing import Callable, List

from ..models import MemoryCandidate

logger = logging.getLogger(__name__)

CurationCallback = Callable[[List[MemoryCandidate]], None]


class MemoryBuffer:
    """Collects candidates and hands full batches to ``on_full``.

    The batch is swapped out under the lock and the callback runs after the
    lock is released, on the thread that triggered it.
    """

    def __init__(self, on_full: CurationCallback, max_size: int = 5) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._on_full = on_full
        self._lock = threading.Lock()
        self._items: List[MemoryCandidate] = []

    def add(self, item: MemoryCandidate) -> None:
        batch: List[MemoryCandidate] = []
        with self._lock:
            self._items.append(item)
            if len(self._items) >= self.max_size:
                batch, self._items = self._items, []
        if batch:
            logger.info("Memory buffer full with %d candidate(s); starting curation", len(batch))
            self._on_full(batch)

    def flush(self) -> None:
        with self._lock:
            batch, self._items = self._items, []
        if not batch:
            return
        logger.info("Flushing %d buffered memory candidate(s)", len(batch))
        self._on_full(batch)

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items = []
