"""Renewal notice claims.

A claim row per ``(order_id, expires_at, audience)`` makes each renewal
reminder go out once across ticks and instances.  The owner's reminder
and the operator's renewal prompt are claimed separately, so a failed
delivery to one side is retried without repeating the other.  Renewal
moves ``expires_at``, so a renewed order becomes eligible again.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pypgkit import Database

from keyvend.db import store_errors

if TYPE_CHECKING:
    from datetime import datetime

OWNER = "owner"
OPERATOR = "operator"


class NoticeRepository:
    def try_claim(self, order_id: int, expires_at: datetime, audience: str = OWNER) -> bool:
        """Atomically claim the reminder via INSERT ON CONFLICT DO NOTHING.

        Returns True if this caller won the insert (rowcount == 1) and
        should send the reminder.
        """
        db = Database.get_instance()
        with store_errors("claim_renewal_notice", order_id=order_id):
            rowcount = db.execute(
                "INSERT INTO renewal_notices (order_id, expires_at, audience) "
                "VALUES (%s, %s, %s) ON CONFLICT DO NOTHING",
                (order_id, expires_at, audience),
            )
        return rowcount == 1

    def release(self, order_id: int, expires_at: datetime, audience: str = OWNER) -> None:
        """Give a claim back so the next tick retries that reminder."""
        db = Database.get_instance()
        with store_errors("release_renewal_notice", order_id=order_id):
            db.execute(
                "DELETE FROM renewal_notices "
                "WHERE order_id = %s AND expires_at = %s AND audience = %s",
                (order_id, expires_at, audience),
            )
