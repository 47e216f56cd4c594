"""Order status transitions.

::

    awaiting_payment --approve--> approved --expire--> expired
           |                         |
           +------reject-------------+--decline renewal--> rejected

``rejected`` and ``expired`` are final.  Renewal is not a transition:
an approved order stays approved and only its expiry moves.
"""

from __future__ import annotations

import logging

from keyvend.core.types import OrderStatus

log = logging.getLogger(__name__)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.AWAITING_PAYMENT: frozenset({OrderStatus.APPROVED, OrderStatus.REJECTED}),
    OrderStatus.APPROVED: frozenset({OrderStatus.REJECTED, OrderStatus.EXPIRED}),
    OrderStatus.REJECTED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}


def _name(status) -> str:
    return getattr(status, "value", str(status))


def assert_transition(current, target, table: dict = ORDER_TRANSITIONS) -> None:
    """Raise ``ValueError`` unless *table* lets *current* move to *target*."""
    if current not in table:
        raise ValueError(f"Unknown status {current!r}")
    targets = table[current]
    if target in targets:
        return
    allowed = ", ".join(sorted(_name(s) for s in targets)) or "none, status is terminal"
    raise ValueError(
        f"Invalid transition {_name(current)!r} -> {_name(target)!r} (allowed: {allowed})",
    )


def log_transition(order_id, from_status, to_status, *, reason: str | None = None) -> None:
    """Log one status change with ``event=state_transition`` for the audit trail."""
    fields = {
        "event": "state_transition",
        "order_id": order_id,
        "from_status": _name(from_status),
        "to_status": _name(to_status),
    }
    suffix = ""
    if reason:
        fields["reason"] = reason
        suffix = f" ({reason})"
    log.info(
        "Order #%s %s -> %s%s",
        order_id,
        fields["from_status"],
        fields["to_status"],
        suffix,
        extra=fields,
    )
