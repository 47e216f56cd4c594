"""Dead-letter record for a remote key deletion not yet confirmed."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class PendingRevocation:
    key_id: str
    order_id: int
    name: str = ""
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime = _EPOCH
    updated_at: datetime = _EPOCH
