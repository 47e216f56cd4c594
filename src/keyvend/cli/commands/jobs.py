"""Jobs subcommand -- run one scheduler job synchronously.

Usage::

    keyvend -c config.yaml jobs run notify_expiring
    keyvend -c config.yaml jobs run deactivate_expired
    keyvend -c config.yaml jobs run retry_revocations
"""

from __future__ import annotations

import logging
import sys

log = logging.getLogger(__name__)


def run_jobs(config, args) -> None:
    if getattr(args, "jobs_command", None) != "run":
        sys.stderr.write("usage: keyvend jobs run <job>\n")
        sys.exit(1)

    from keyvend.app.context import Container  # noqa: PLC0415
    from keyvend.db import init_database  # noqa: PLC0415

    db = init_database(config.settings.database)
    container = Container(db, config.settings)

    try:
        result = container.expiration_worker.run_job(args.job)
    except Exception as exc:
        log.exception("Job %s failed", args.job)
        sys.stderr.write(f"Job {args.job} failed: {exc}\n")
        sys.exit(1)

    if isinstance(result, list):
        result = len(result)
    sys.stdout.write(f"{args.job}: {result}\n")
