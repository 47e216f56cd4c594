"""AccessKey entity and the KeyContext read model."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from keyvend.models.order import OwnerProfile

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class AccessKey:
    """One provisioned credential.  ``id`` is the remote-assigned identifier."""

    id: str
    name: str
    url: str
    order_id: int | None = None
    created_at: datetime = _EPOCH


@dataclass(frozen=True)
class KeyContext:
    """An access key joined with enough of its order to render or notify."""

    key: AccessKey
    order_id: int
    owner_id: int
    price: int
    key_count: int
    expires_at: datetime
    profile: OwnerProfile
