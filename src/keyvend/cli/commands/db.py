"""``keyvend db status``: can we reach the order store, and is its schema there."""

from __future__ import annotations

import sys


def run_db(config, args) -> None:
    if args.db_command != "status":
        sys.stderr.write("usage: keyvend db status\n")
        sys.exit(1)

    from keyvend.db import init_database  # noqa: PLC0415
    from keyvend.db.init import TABLES, missing_tables  # noqa: PLC0415

    try:
        db = init_database(config.settings.database)
        db.fetch_value("SELECT 1")
        missing = missing_tables(db)
    except Exception as exc:  # noqa: BLE001
        sys.stderr.write(f"Database: unreachable ({exc})\n")
        sys.exit(1)

    sys.stdout.write("Database: connected\n")
    sys.stdout.write(f"Schema:   {len(TABLES) - len(missing)}/{len(TABLES)} tables present\n")
    if missing:
        sys.stdout.write(f"Missing:  {', '.join(missing)}\n")
        sys.stdout.write("Run with database.auto_setup: true to create the schema.\n")
        sys.exit(1)
