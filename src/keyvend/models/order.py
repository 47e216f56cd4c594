"""Order entity and OwnerProfile value object."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from keyvend.core.types import OrderStatus

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class OwnerProfile:
    """Display-name snapshot taken when the order is placed (never re-synced)."""

    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    def display_name(self) -> str:
        full = " ".join(p for p in (self.first_name, self.last_name) if p)
        if self.username:
            return f"{full} (@{self.username})" if full else f"@{self.username}"
        return full or "-"


@dataclass(frozen=True)
class Order:
    id: int
    owner_id: int
    key_count: int
    price: int
    status: OrderStatus
    profile: OwnerProfile = OwnerProfile()
    created_at: datetime = _EPOCH
    expires_at: datetime | None = None
    closed_at: datetime | None = None
