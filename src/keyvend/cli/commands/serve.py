"""``keyvend serve``: webhook endpoint plus the in-process expiration worker."""

from __future__ import annotations

import logging

log = logging.getLogger(__name__)


def run_serve(config, args) -> None:
    from keyvend.app import create_app  # noqa: PLC0415
    from keyvend.db import init_database  # noqa: PLC0415

    server = config.settings.server
    app = create_app(config=config, database=init_database(config.settings.database))

    if not args.dev:
        from keyvend.server.gunicorn_app import run_gunicorn  # noqa: PLC0415

        run_gunicorn(app, server)
        return

    log.warning("Flask development server on %s:%s, do not expose it", server.bind, server.port)
    app.extensions["shutdown_coordinator"].register_signals()
    # a reloader child would run a second expiration worker against the same orders
    app.run(host=server.bind, port=server.port, debug=True, use_reloader=False)
