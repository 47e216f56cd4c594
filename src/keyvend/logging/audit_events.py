"""Structured audit event logger.

Emits standardized order and key lifecycle events.  All events go to
the ``keyvend.audit`` logger with a consistent ``event_id`` field for
filtering and alerting.

Access URLs and management endpoints are redacted via
:func:`~keyvend.logging.sanitize.sanitize_for_logs` before emission.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from keyvend.logging.sanitize import sanitize_for_logs

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

audit_log = logging.getLogger("keyvend.audit")


def _emit(
    event_id: str,
    message: str,
    *args: Any,  # noqa: ANN401
    owner_id: int | None = None,
    severity: str = "INFO",
    **extra: Any,  # noqa: ANN401
) -> None:
    """Emit a structured audit event.

    All *extra* keyword arguments are sanitized before logging.
    """
    sanitized_extra = sanitize_for_logs(extra)
    data: dict[str, object] = {
        "event_id": event_id,
        "severity": severity,
    }
    if owner_id is not None:
        data["owner_id"] = owner_id
    data.update(sanitized_extra)
    level = getattr(logging, severity.upper(), logging.INFO)
    audit_log.log(level, message, *args, extra=data)


def order_placed(order_id: int, owner_id: int, key_count: int, price: int) -> None:
    """Log a new order awaiting payment."""
    _emit(
        "keyvend.audit.order_placed",
        "Order placed: id=%s, keys=%s, price=%s",
        order_id,
        key_count,
        price,
        owner_id=owner_id,
        order_id=order_id,
        key_count=key_count,
        price=price,
    )


def order_approved(
    order_id: int,
    owner_id: int,
    key_ids: Sequence[str],
    expires_at: datetime,
) -> None:
    """Log approval of an order and the keys issued for it."""
    _emit(
        "keyvend.audit.order_approved",
        "Order approved: id=%s, keys=%s, expires_at=%s",
        order_id,
        list(key_ids),
        expires_at,
        owner_id=owner_id,
        order_id=order_id,
        key_ids=list(key_ids),
    )


def order_closed(
    order_id: int,
    owner_id: int | None,
    status: str,
    key_ids: Sequence[str],
) -> None:
    """Log an order reaching a terminal status."""
    _emit(
        "keyvend.audit.order_closed",
        "Order closed: id=%s, status=%s, keys=%s",
        order_id,
        status,
        list(key_ids),
        owner_id=owner_id,
        order_id=order_id,
        status=status,
        key_ids=list(key_ids),
    )


def order_renewed(order_id: int, owner_id: int, expires_at: datetime | None) -> None:
    """Log an order renewal."""
    _emit(
        "keyvend.audit.order_renewed",
        "Order renewed: id=%s, expires_at=%s",
        order_id,
        expires_at,
        owner_id=owner_id,
        order_id=order_id,
    )


def orphaned_keys(key_ids: Sequence[str], reason: str, *, order_id: int | None = None) -> None:
    """Log keys that exist remotely but were never recorded locally."""
    _emit(
        "keyvend.audit.orphaned_keys",
        "Orphaned remote keys: %s (%s)",
        list(key_ids),
        reason,
        order_id=order_id,
        key_ids=list(key_ids),
        reason=reason,
        severity="WARNING",
    )


def revocation_failed(key_id: str, order_id: int | None, detail: str) -> None:
    """Log a remote key deletion that did not succeed and stays queued."""
    _emit(
        "keyvend.audit.revocation_failed",
        "Key revocation failed: key=%s, order=%s, detail=%s",
        key_id,
        order_id,
        detail,
        key_id=key_id,
        order_id=order_id,
        severity="WARNING",
    )


def backend_migrated(old_endpoint: str, new_endpoint: str, orders: int, keys: int) -> None:
    """Log a completed switch to a new provisioning endpoint."""
    _emit(
        "keyvend.audit.backend_migrated",
        "Provisioning backend migrated: orders=%s, keys=%s",
        orders,
        keys,
        old_endpoint=old_endpoint,
        new_endpoint=new_endpoint,
        orders=orders,
        keys=keys,
        severity="WARNING",
    )


def operator_action_refused(user_id: int, step: str) -> None:
    """Log an operator-only action attempted by someone else."""
    _emit(
        "keyvend.audit.operator_action_refused",
        "Operator action refused: user=%s, step=%s",
        user_id,
        step,
        owner_id=user_id,
        step=step,
        severity="WARNING",
    )
