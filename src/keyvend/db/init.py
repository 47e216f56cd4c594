"""Connect the PyPGKit :class:`Database` singleton for keyvend.

With ``database.auto_setup`` the bundled ``schema.sql`` (idempotent
``CREATE ... IF NOT EXISTS``) is applied on connect; otherwise the
schema is expected to exist already and missing tables are reported.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from pypgkit import Database, DatabaseConfig

if TYPE_CHECKING:
    from keyvend.config.settings import DatabaseSettings

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

TABLES = (
    "orders",
    "access_keys",
    "renewal_notices",
    "pending_key_revocations",
    "provisioning_endpoint",
)

log = logging.getLogger(__name__)


def _settings_to_config(settings: DatabaseSettings) -> DatabaseConfig:
    fields = (
        "host",
        "port",
        "database",
        "user",
        "password",
        "sslmode",
        "min_connections",
        "max_connections",
        "connection_timeout",
    )
    return DatabaseConfig(**{name: getattr(settings, name) for name in fields})


def missing_tables(db: Database) -> list[str]:
    """Names from :data:`TABLES` absent from the ``public`` schema."""
    rows = db.fetch_all(
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = 'public' AND table_name = ANY(%s)",
        (list(TABLES),),
    )
    present = {row["table_name"] for row in rows}
    return [name for name in TABLES if name not in present]


def init_database(settings: DatabaseSettings) -> Database:
    """Return the process-wide :class:`Database`, connecting on first use."""
    if Database.is_initialized():
        return Database.get_instance()

    target = f"{settings.user}@{settings.host}:{settings.port}/{settings.database}"
    log.info("Connecting to order store %s", target)

    db = Database.init(
        config=_settings_to_config(settings),
        schema_path=SCHEMA_PATH if settings.auto_setup else None,
        auto_setup=settings.auto_setup,
        interactive=False,
    )

    if not settings.auto_setup:
        missing = missing_tables(db)
        if missing:
            log.warning(
                "Order store %s lacks tables %s; enable database.auto_setup to create them",
                target,
                ", ".join(missing),
            )
    return db
