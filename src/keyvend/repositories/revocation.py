"""Pending key revocation repository (dead-letter queue for remote deletes)."""

from __future__ import annotations

from pypgkit import BaseRepository, Database

from keyvend.db import store_errors
from keyvend.models.revocation import PendingRevocation

_MAX_ERROR_LENGTH = 500


class RevocationRepository(BaseRepository[PendingRevocation]):
    table_name = "pending_key_revocations"
    primary_key = "key_id"

    def _row_to_entity(self, row: dict) -> PendingRevocation:
        return PendingRevocation(
            key_id=row["key_id"],
            order_id=row["order_id"],
            name=row.get("name", ""),
            attempts=row.get("attempts", 0),
            last_error=row.get("last_error"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _entity_to_row(self, entity: PendingRevocation) -> dict:
        return {
            "key_id": entity.key_id,
            "order_id": entity.order_id,
            "name": entity.name,
            "attempts": entity.attempts,
            "last_error": entity.last_error,
        }

    def list_pending(self, limit: int = 100) -> list[PendingRevocation]:
        """Oldest-first batch of deletions still awaiting confirmation."""
        db = Database.get_instance()
        with store_errors("list_pending_revocations"):
            rows = db.fetch_all(
                "SELECT * FROM pending_key_revocations ORDER BY updated_at, key_id LIMIT %s",
                (limit,),
                as_dict=True,
            )
        return [self._row_to_entity(r) for r in rows]

    def mark_revoked(self, key_id: str) -> bool:
        """Drop the queue entry once the remote delete is confirmed."""
        db = Database.get_instance()
        with store_errors("mark_revoked"):
            return (
                db.execute(
                    "DELETE FROM pending_key_revocations WHERE key_id = %s",
                    (key_id,),
                )
                == 1
            )

    def record_failure(self, key_id: str, error: str) -> None:
        db = Database.get_instance()
        with store_errors("record_revocation_failure"):
            db.execute(
                "UPDATE pending_key_revocations "
                "SET attempts = attempts + 1, last_error = %s, updated_at = now() "
                "WHERE key_id = %s",
                (error[:_MAX_ERROR_LENGTH], key_id),
            )

    def count_pending(self) -> int:
        db = Database.get_instance()
        with store_errors("count_pending_revocations"):
            return int(db.fetch_value("SELECT count(*) FROM pending_key_revocations") or 0)
