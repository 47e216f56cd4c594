"""Run the already-built Flask app under gunicorn (``keyvend serve``).

Server options come from the ``server`` config section; no separate
gunicorn config file is read.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from flask import Flask

    from keyvend.config.settings import ServerSettings

log = logging.getLogger(__name__)


def gunicorn_options(settings: ServerSettings) -> dict[str, Any]:
    return {
        "bind": f"{settings.bind}:{settings.port}",
        "workers": settings.workers,
        "worker_class": settings.worker_class,
        "timeout": settings.timeout,
        "graceful_timeout": settings.graceful_timeout,
        "keepalive": settings.keepalive,
        "proc_name": "keyvend",
        # request hooks write the access log
        "accesslog": None,
    }


def run_gunicorn(app: Flask, settings: ServerSettings) -> None:
    """Serve *app* until gunicorn exits.

    Raises :class:`RuntimeError` when gunicorn cannot be imported.
    """
    try:
        from gunicorn.app.base import BaseApplication  # noqa: PLC0415
    except ImportError:
        msg = (
            "gunicorn is not installed (it is Unix-only); "
            "install keyvend with its server dependencies or run `keyvend serve --dev`"
        )
        raise RuntimeError(msg) from None

    options = gunicorn_options(settings)

    class KeyvendServer(BaseApplication):
        def load_config(self) -> None:
            for key, value in options.items():
                self.cfg.set(key, value)

        def load(self) -> Flask:
            return app

    if settings.workers > 1:
        log.warning(
            "server.workers=%d: open order menus and operator prompts are kept per "
            "process and are not shared between workers, so a button may land on a "
            "worker that never saw the menu",
            settings.workers,
        )
    log.info(
        "Serving webhook on %s with %d %s worker(s)",
        options["bind"],
        settings.workers,
        settings.worker_class,
    )
    KeyvendServer().run()
