"""Inspect subcommand -- query stored orders for debugging.

Usage::

    keyvend -c config.yaml inspect order <id>
"""

from __future__ import annotations

import json
import sys


def run_inspect(config, args) -> None:
    """Dispatch to the appropriate inspect sub-handler."""
    sub = getattr(args, "inspect_command", None)
    if sub != "order":
        sys.stderr.write("usage: keyvend inspect order <id>\n")
        sys.exit(1)

    from keyvend.db import init_database  # noqa: PLC0415

    db = init_database(config.settings.database)
    _inspect_order(db, args.resource_id)


def _inspect_order(db, resource_id: str) -> None:
    """Print order details with its keys and queued revocations."""
    from keyvend.app.errors import NotFoundError  # noqa: PLC0415
    from keyvend.repositories import OrderRepository  # noqa: PLC0415

    try:
        order_id = int(resource_id.lstrip("#"))
    except ValueError:
        sys.stderr.write(f"Invalid order id: {resource_id!r}\n")
        sys.exit(1)

    repo = OrderRepository(db)
    try:
        order = repo.get_order(order_id)
    except NotFoundError as exc:
        sys.stderr.write(f"{exc.detail}\n")
        sys.exit(1)

    keys = repo.find_keys(order_id)
    pending = db.fetch_all(
        "SELECT key_id, attempts, last_error FROM pending_key_revocations WHERE order_id = %s",
        (order_id,),
        as_dict=True,
    )

    result = {
        "id": order.id,
        "owner_id": order.owner_id,
        "owner": order.profile.display_name(),
        "status": order.status.value,
        "key_count": order.key_count,
        "price": order.price,
        "created_at": str(order.created_at),
        "expires_at": str(order.expires_at) if order.expires_at else None,
        "closed_at": str(order.closed_at) if order.closed_at else None,
        "keys": [{"id": k.id, "name": k.name} for k in keys],
        "pending_revocations": pending,
    }
    sys.stdout.write(json.dumps(result, indent=2, default=str) + "\n")
