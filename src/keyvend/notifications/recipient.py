"""Addressing for outbound chat messages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from keyvend.models.order import Order, OwnerProfile


@dataclass(frozen=True)
class Recipient:
    """Who a message goes to.

    A numeric ``chat_id`` is always preferred.  ``username`` is only
    used when no id is known (the Bot API accepts ``@channelusername``
    as ``chat_id``).
    """

    chat_id: int | None = None
    username: str | None = None

    def __post_init__(self) -> None:
        if self.chat_id is None and not self.username:
            msg = "Recipient needs a chat_id or a username"
            raise ValueError(msg)

    @classmethod
    def for_owner(cls, owner_id: int, profile: OwnerProfile | None = None) -> Recipient:
        return cls(chat_id=owner_id, username=profile.username if profile else None)

    @classmethod
    def for_order(cls, order: Order) -> Recipient:
        return cls.for_owner(order.owner_id, order.profile)

    def resolve(self) -> int | str:
        """Return the value to put in the API's ``chat_id`` field."""
        if self.chat_id is not None:
            return self.chat_id
        return f"@{self.username.lstrip('@')}"  # type: ignore[union-attr]

    def display(self) -> str:
        if self.username and self.chat_id is not None:
            return f"@{self.username} ({self.chat_id})"
        return str(self.resolve())
