"""Provisioning subcommand -- migrate every active key to a new endpoint.

Usage::

    keyvend -c config.yaml provisioning migrate https://203.0.113.7:4321/SeCrEt --cert-sha256 AB12
    keyvend -c config.yaml provisioning migrate '{"apiUrl": "...", "certSha256": "..."}'

The new endpoint is recorded in the store; running servers switch to it
on their next call to the key server.
"""

from __future__ import annotations

import sys


def run_provisioning(config, args) -> None:
    if getattr(args, "provisioning_command", None) != "migrate":
        sys.stderr.write("usage: keyvend provisioning migrate <api_url>\n")
        sys.exit(1)

    from keyvend.app.context import Container  # noqa: PLC0415
    from keyvend.app.errors import KeyvendProblem  # noqa: PLC0415
    from keyvend.db import init_database  # noqa: PLC0415
    from keyvend.provisioning import ProvisioningError, parse_endpoint  # noqa: PLC0415

    try:
        endpoint = parse_endpoint(
            args.api_url,
            cert_sha256=getattr(args, "cert_sha256", None),
            ca_cert_path=getattr(args, "ca_cert", None),
            verify_tls=not getattr(args, "insecure", False),
        )
    except ValueError as exc:
        sys.stderr.write(f"Migration failed: {exc}\n")
        sys.exit(1)

    db = init_database(config.settings.database)
    container = Container(db, config.settings)

    try:
        summary = container.order_service.migrate_backend(endpoint)
    except (KeyvendProblem, ProvisioningError) as exc:
        sys.stderr.write(f"Migration failed: {exc.detail}\n")
        sys.exit(1)

    sys.stdout.write(
        f"Migrated {summary.orders} order(s), {summary.keys} key(s).\n"
        "Running servers follow the new endpoint on their next key server call; "
        "update provisioning in the configuration file to match.\n",
    )
