"""The single ``provisioning_endpoint`` row.

Every process reads it before talking to the key server, so a migration
run from the CLI is picked up by running servers.  The write happens
inside :meth:`OrderRepository.replace_all_keys`; approvals lock the row
``FOR SHARE`` (see :func:`lock_endpoint`).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pypgkit import Database

from keyvend.db import store_errors
from keyvend.models.endpoint import ManagementEndpoint

if TYPE_CHECKING:
    from keyvend.db import UnitOfWork

_COLUMNS = "api_url, cert_sha256, ca_cert_path, verify_tls"


def _row_to_endpoint(row: dict) -> ManagementEndpoint:
    return ManagementEndpoint(
        api_url=row["api_url"],
        cert_sha256=row.get("cert_sha256"),
        ca_cert_path=row.get("ca_cert_path"),
        verify_tls=row.get("verify_tls", True),
        updated_at=row["updated_at"],
    )


def _params(endpoint: ManagementEndpoint) -> tuple:
    return (endpoint.api_url, endpoint.cert_sha256, endpoint.ca_cert_path, endpoint.verify_tls)


def lock_endpoint(uow: UnitOfWork, *, exclusive: bool) -> ManagementEndpoint | None:
    """Read the row inside *uow*, locked until the transaction ends."""
    mode = "UPDATE" if exclusive else "SHARE"
    row = uow.fetch_one(
        f"SELECT {_COLUMNS}, updated_at FROM provisioning_endpoint FOR {mode}",  # noqa: S608
    )
    return _row_to_endpoint(row) if row is not None else None


def store_endpoint(uow: UnitOfWork, endpoint: ManagementEndpoint) -> None:
    uow.execute(
        f"INSERT INTO provisioning_endpoint ({_COLUMNS}) VALUES (%s, %s, %s, %s) "  # noqa: S608
        "ON CONFLICT (singleton) DO UPDATE SET api_url = EXCLUDED.api_url, "
        "cert_sha256 = EXCLUDED.cert_sha256, ca_cert_path = EXCLUDED.ca_cert_path, "
        "verify_tls = EXCLUDED.verify_tls, updated_at = now()",
        _params(endpoint),
    )


class EndpointRepository:
    def load(self) -> ManagementEndpoint | None:
        db = Database.get_instance()
        with store_errors("load_endpoint"):
            row = db.fetch_one(
                f"SELECT {_COLUMNS}, updated_at FROM provisioning_endpoint",  # noqa: S608
                as_dict=True,
            )
        return _row_to_endpoint(row) if row is not None else None

    def seed(self, endpoint: ManagementEndpoint) -> ManagementEndpoint:
        """Record *endpoint* unless one is recorded already; return the recorded one."""
        db = Database.get_instance()
        with store_errors("seed_endpoint"):
            db.execute(
                f"INSERT INTO provisioning_endpoint ({_COLUMNS}) "  # noqa: S608
                "VALUES (%s, %s, %s, %s) ON CONFLICT (singleton) DO NOTHING",
                _params(endpoint),
            )
        return self.load() or endpoint
