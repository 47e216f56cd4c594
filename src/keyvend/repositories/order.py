"""Order repository -- orders plus the access keys they own.

Every multi-row mutation (approval, closure, migration replay) runs in
one :class:`~keyvend.db.UnitOfWork`; status changes are compare-and-swap
updates on the expected current status, so a lost race surfaces as a
:class:`~keyvend.app.errors.ValidationError` instead of a double write.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pypgkit import BaseRepository, Database

from keyvend.app.errors import (
    ENDPOINT_MOVED,
    INVALID_TRANSITION,
    MALFORMED,
    NotFoundError,
    ValidationError,
)
from keyvend.core.types import OrderStatus
from keyvend.db import UnitOfWork, store_errors
from keyvend.models.access_key import AccessKey, KeyContext
from keyvend.models.order import Order, OwnerProfile
from keyvend.repositories.endpoint import lock_endpoint, store_endpoint

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from datetime import datetime, timedelta

    from keyvend.models.endpoint import ManagementEndpoint

_KEY_CONTEXT_SELECT = (
    "SELECT k.id AS key_id, k.name AS key_name, k.url AS key_url, "
    "       k.created_at AS key_created_at, "
    "       o.id AS order_id, o.owner_id, o.price, o.key_count, o.expires_at, "
    "       o.username, o.first_name, o.last_name "
    "FROM access_keys k "
    "JOIN orders o ON o.id = k.order_id "
)


class OrderRepository(BaseRepository[Order]):
    table_name = "orders"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> Order:
        return Order(
            id=row["id"],
            owner_id=row["owner_id"],
            key_count=row["key_count"],
            price=row["price"],
            status=OrderStatus(row["status"]),
            profile=OwnerProfile(
                username=row.get("username"),
                first_name=row.get("first_name"),
                last_name=row.get("last_name"),
            ),
            created_at=row["created_at"],
            expires_at=row.get("expires_at"),
            closed_at=row.get("closed_at"),
        )

    def _entity_to_row(self, entity: Order) -> dict:
        return {
            "owner_id": entity.owner_id,
            "username": entity.profile.username,
            "first_name": entity.profile.first_name,
            "last_name": entity.profile.last_name,
            "key_count": entity.key_count,
            "price": entity.price,
            "status": entity.status.value,
            "created_at": entity.created_at,
            "expires_at": entity.expires_at,
            "closed_at": entity.closed_at,
        }

    @staticmethod
    def _row_to_key(row: dict) -> AccessKey:
        return AccessKey(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            order_id=row.get("order_id"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_key_context(row: dict) -> KeyContext:
        return KeyContext(
            key=AccessKey(
                id=row["key_id"],
                name=row["key_name"],
                url=row["key_url"],
                order_id=row["order_id"],
                created_at=row["key_created_at"],
            ),
            order_id=row["order_id"],
            owner_id=row["owner_id"],
            price=row["price"],
            key_count=row["key_count"],
            expires_at=row["expires_at"],
            profile=OwnerProfile(
                username=row.get("username"),
                first_name=row.get("first_name"),
                last_name=row.get("last_name"),
            ),
        )

    @staticmethod
    def _key_rows(order_id: int, keys: Sequence[AccessKey]) -> list[dict]:
        return [{"id": k.id, "name": k.name, "url": k.url, "order_id": order_id} for k in keys]

    # -- single-order operations ---------------------------------------------

    def create_order(
        self,
        owner_id: int,
        profile: OwnerProfile,
        key_count: int,
        price: int,
        created_at: datetime,
    ) -> int:
        """Insert a new order awaiting payment and return its id."""
        if key_count <= 0:
            msg = f"key_count must be positive (got {key_count})"
            raise ValidationError(MALFORMED, msg)
        db = Database.get_instance()
        row = self._entity_to_row(
            Order(
                id=0,
                owner_id=owner_id,
                key_count=key_count,
                price=price,
                status=OrderStatus.AWAITING_PAYMENT,
                profile=profile,
                created_at=created_at,
            ),
        )
        columns = list(row.keys())
        with store_errors("create_order", owner_id=owner_id):
            return db.fetch_value(
                f"INSERT INTO orders ({', '.join(columns)}) "  # noqa: S608
                f"VALUES ({', '.join(['%s'] * len(columns))}) RETURNING id",
                tuple(row.values()),
            )

    def get_order(self, order_id: int) -> Order:
        """Return the order or raise :class:`NotFoundError`."""
        db = Database.get_instance()
        with store_errors("get_order", order_id=order_id):
            row = db.fetch_one(
                "SELECT * FROM orders WHERE id = %s",
                (order_id,),
                as_dict=True,
            )
        if row is None:
            msg = f"Order {order_id} not found"
            raise NotFoundError(msg)
        return self._row_to_entity(row)

    def close_order(
        self,
        order_id: int,
        status: OrderStatus,
        closed_at: datetime,
        *,
        expected: OrderStatus,
        expires_before: datetime | None = None,
    ) -> list[AccessKey]:
        """Move an order to a terminal *status* and queue its keys for revocation.

        The status update is conditional on the order still being in
        *expected* (and, with *expires_before*, on its expiry not having
        been pushed past that instant by a concurrent renewal).  In the
        same transaction the order's key rows move to
        ``pending_key_revocations``.

        Returns
        -------
        list[AccessKey]
            Keys the caller must now delete at the provisioning service.

        """
        sql = (
            "UPDATE orders SET status = %s, closed_at = %s, expires_at = NULL "
            "WHERE id = %s AND status = %s"
        )
        params: list = [status.value, closed_at, order_id, expected.value]
        if expires_before is not None:
            sql += " AND expires_at <= %s"
            params.append(expires_before)
        sql += " RETURNING id"

        db = Database.get_instance()
        with store_errors("close_order", order_id=order_id), UnitOfWork(db) as uow:
            if uow.fetch_one(sql, params) is None:
                msg = f"Order {order_id} is no longer {expected.value}; not closed as {status.value}"
                raise ValidationError(INVALID_TRANSITION, msg)
            removed = uow.fetch_all(
                "DELETE FROM access_keys WHERE order_id = %s RETURNING *",
                (order_id,),
            )
            uow.insert_many(
                "pending_key_revocations",
                [
                    {"key_id": r["id"], "order_id": order_id, "name": r["name"]}
                    for r in removed
                ],
            )
        return [self._row_to_key(r) for r in removed]

    def approve_order(
        self,
        order_id: int,
        keys: Sequence[AccessKey],
        expires_at: datetime,
        *,
        issued_by: str | None = None,
    ) -> Order:
        """Atomically approve an order and persist its keys.

        Either the status flips to approved *and* every key row is
        written, or nothing changes.  With *issued_by* (the management
        URL the keys came from) the approval is refused when a migration
        has since moved the live keys elsewhere.
        """
        db = Database.get_instance()
        with store_errors("approve_order", order_id=order_id), UnitOfWork(db) as uow:
            current = lock_endpoint(uow, exclusive=False)
            if issued_by is not None and current is not None and current.api_url != issued_by:
                msg = (
                    f"Order {order_id} not approved: keys were migrated to another "
                    "management endpoint meanwhile; approve it again"
                )
                raise ValidationError(ENDPOINT_MOVED, msg)
            row = uow.fetch_one(
                "UPDATE orders SET status = %s, expires_at = %s "
                "WHERE id = %s AND status = %s RETURNING *",
                (
                    OrderStatus.APPROVED.value,
                    expires_at,
                    order_id,
                    OrderStatus.AWAITING_PAYMENT.value,
                ),
            )
            if row is None:
                msg = f"Order {order_id} is not awaiting payment; not approved"
                raise ValidationError(INVALID_TRANSITION, msg)
            uow.insert_many("access_keys", self._key_rows(order_id, keys))
        return self._row_to_entity(row)

    def renew_order(self, order_id: int, extension: timedelta) -> Order:
        """Push an approved order's expiry forward by *extension*."""
        db = Database.get_instance()
        with store_errors("renew_order", order_id=order_id):
            row = db.fetch_one(
                "UPDATE orders SET expires_at = expires_at + %s "
                "WHERE id = %s AND status = %s RETURNING *",
                (extension, order_id, OrderStatus.APPROVED.value),
                as_dict=True,
            )
        if row is None:
            current = self.get_order(order_id)
            msg = f"Order {order_id} is {current.status.value}; only approved orders renew"
            raise ValidationError(INVALID_TRANSITION, msg)
        return self._row_to_entity(row)

    # -- queries -------------------------------------------------------------

    def count_active_keys(self, owner_id: int, now: datetime) -> int:
        """Count keys on the owner's approved, unexpired orders."""
        db = Database.get_instance()
        with store_errors("count_active_keys", owner_id=owner_id):
            count = db.fetch_value(
                "SELECT count(*) FROM access_keys k "
                "JOIN orders o ON o.id = k.order_id "
                "WHERE o.owner_id = %s AND o.status = %s AND o.expires_at > %s",
                (owner_id, OrderStatus.APPROVED.value, now),
            )
        return int(count or 0)

    def list_active_keys_for_owner(self, owner_id: int, now: datetime) -> list[KeyContext]:
        db = Database.get_instance()
        with store_errors("list_active_keys_for_owner", owner_id=owner_id):
            rows = db.fetch_all(
                _KEY_CONTEXT_SELECT + "WHERE o.owner_id = %s AND o.status = %s "
                "AND o.expires_at > %s ORDER BY o.id, k.created_at, k.id",
                (owner_id, OrderStatus.APPROVED.value, now),
                as_dict=True,
            )
        return [self._row_to_key_context(r) for r in rows]

    def list_expiring_keys(self, within: timedelta, now: datetime) -> list[KeyContext]:
        """Keys of approved orders whose expiry falls at or before ``now + within``.

        ``within`` of zero selects orders that have already expired but
        are still open.
        """
        db = Database.get_instance()
        with store_errors("list_expiring_keys"):
            rows = db.fetch_all(
                _KEY_CONTEXT_SELECT + "WHERE o.status = %s AND o.expires_at <= %s "
                "ORDER BY o.expires_at, o.id, k.id",
                (OrderStatus.APPROVED.value, now + within),
                as_dict=True,
            )
        return [self._row_to_key_context(r) for r in rows]

    def list_active_orders(self) -> list[Order]:
        db = Database.get_instance()
        with store_errors("list_active_orders"):
            rows = db.fetch_all(
                "SELECT * FROM orders WHERE status = %s ORDER BY id",
                (OrderStatus.APPROVED.value,),
                as_dict=True,
            )
        return [self._row_to_entity(r) for r in rows]

    def find_keys(self, order_id: int) -> list[AccessKey]:
        db = Database.get_instance()
        with store_errors("find_keys", order_id=order_id):
            rows = db.fetch_all(
                "SELECT * FROM access_keys WHERE order_id = %s ORDER BY created_at, id",
                (order_id,),
                as_dict=True,
            )
        return [self._row_to_key(r) for r in rows]

    # -- bulk (migration) ----------------------------------------------------

    def delete_all_keys(self, uow: UnitOfWork) -> int:
        """Wipe the access key table inside *uow*.  Irreversible; migration only."""
        return uow.execute("DELETE FROM access_keys")

    def replace_all_keys(
        self,
        replacements: Mapping[int, Sequence[AccessKey]],
        endpoint: ManagementEndpoint,
        *,
        replacing: str | None = None,
    ) -> int:
        """Swap every stored key for its replacement and record *endpoint*.

        One transaction.  The endpoint row and every approved order are
        locked first; if the approved orders are no longer exactly the
        ones replacements were provisioned for (one closed, or one was
        approved meanwhile) nothing changes.  Neither does anything when
        the recorded endpoint is no longer *replacing*.  Orders keep
        their status and ``expires_at``.

        Returns the number of key rows written.
        """
        db = Database.get_instance()
        written = 0
        with store_errors("replace_all_keys"), UnitOfWork(db) as uow:
            current = lock_endpoint(uow, exclusive=True)
            if replacing is not None and current is not None and current.api_url != replacing:
                msg = "Keys were migrated by another process meanwhile; nothing replaced"
                raise ValidationError(ENDPOINT_MOVED, msg)
            approved = {
                row["id"]
                for row in uow.fetch_all(
                    "SELECT id FROM orders WHERE status = %s ORDER BY id FOR UPDATE",
                    (OrderStatus.APPROVED.value,),
                )
            }
            closed = sorted(set(replacements) - approved)
            if closed:
                msg = f"Order(s) {_ids(closed)} closed during migration; nothing replaced"
                raise ValidationError(INVALID_TRANSITION, msg)
            missed = sorted(approved - set(replacements))
            if missed:
                msg = f"Order(s) {_ids(missed)} approved during migration; nothing replaced"
                raise ValidationError(INVALID_TRANSITION, msg)

            self.delete_all_keys(uow)
            for order_id, keys in replacements.items():
                written += uow.insert_many("access_keys", self._key_rows(order_id, keys))
            store_endpoint(uow, endpoint)
        return written


def _ids(order_ids: Sequence[int]) -> str:
    return ", ".join(f"#{i}" for i in order_ids)
