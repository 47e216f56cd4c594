"""Per-owner pending conversation state.

Records which multi-step interaction an owner is in the middle of
(choosing a key count, sending a migration URL).  Entries expire after
a TTL and the store is bounded: once full, the least recently touched
entry is evicted.  The order engine never reads this store.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from keyvend.core.types import Step


@dataclass(frozen=True)
class PendingInteraction:
    step: Step
    created_at: float


class InteractionStore:
    """Thread-safe owner -> :class:`PendingInteraction` map with TTL and LRU bound."""

    def __init__(
        self,
        ttl_seconds: float = 86400,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[int, PendingInteraction] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._entries)

    def put(self, owner_id: int, step: Step) -> PendingInteraction:
        """Start (or restart) an interaction for *owner_id*."""
        now = self._clock()
        entry = PendingInteraction(step=step, created_at=now)
        with self._lock:
            self._purge_expired(now)
            self._entries[owner_id] = entry
            self._entries.move_to_end(owner_id)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return entry

    def get(self, owner_id: int) -> PendingInteraction | None:
        """Return the live interaction for *owner_id*, or ``None``."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(owner_id)
            if entry is None:
                return None
            if now - entry.created_at >= self._ttl:
                del self._entries[owner_id]
                return None
            self._entries.move_to_end(owner_id)
            return entry

    def pop(self, owner_id: int) -> PendingInteraction | None:
        """Remove and return the interaction for *owner_id*, if live."""
        entry = self.get(owner_id)
        if entry is not None:
            with self._lock:
                self._entries.pop(owner_id, None)
        return entry

    def clear(self, owner_id: int) -> bool:
        with self._lock:
            return self._entries.pop(owner_id, None) is not None

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, v in self._entries.items() if now - v.created_at >= self._ttl]
        for key in expired:
            del self._entries[key]
