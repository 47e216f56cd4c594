"""Builds the keyvend WSGI application.

Without a database the app serves only the health probes, which is
what ``create_app(config=...)`` gives tests.  With one, the container is
wired, the key server configuration is checked, the webhook (and
``/metrics`` when enabled) is mounted and the expiration worker starts.
"""

from __future__ import annotations

import atexit
import logging
from typing import TYPE_CHECKING

from flask import Flask

from keyvend.app.errors import register_error_handlers
from keyvend.app.health import health_bp
from keyvend.app.middleware import register_request_hooks
from keyvend.app.shutdown import ShutdownCoordinator

if TYPE_CHECKING:
    from pypgkit import Database

    from keyvend.config.keyvend_config import KeyvendConfig
    from keyvend.config.settings import KeyvendSettings

log = logging.getLogger(__name__)

# chat updates are a few KiB of JSON
MAX_REQUEST_BODY_BYTES = 1024 * 1024


def create_app(
    config: KeyvendConfig | None = None,
    database: Database | None = None,
) -> Flask:
    """Return the Flask app for *config* (default: :func:`get_config`)."""
    if config is None:
        from keyvend.config import get_config  # noqa: PLC0415

        config = get_config()
    settings = config.settings

    app = Flask("keyvend")
    app.config.update(
        KEYVEND_SETTINGS=settings,
        KEYVEND_CONFIG=config,
        MAX_CONTENT_LENGTH=MAX_REQUEST_BODY_BYTES,
    )

    coordinator = ShutdownCoordinator(graceful_timeout=settings.server.graceful_timeout)
    app.extensions["shutdown_coordinator"] = coordinator
    atexit.register(coordinator.initiate)

    register_error_handlers(app)
    register_request_hooks(app)
    app.register_blueprint(health_bp)

    if database is not None:
        _mount_order_desk(app, settings, database, coordinator)

    log.info("keyvend app ready (webhook %s)", "mounted" if database is not None else "not mounted")
    return app


def _mount_order_desk(
    app: Flask,
    settings: KeyvendSettings,
    database: Database,
    coordinator: ShutdownCoordinator,
) -> None:
    from keyvend.app.context import Container  # noqa: PLC0415
    from keyvend.frontend.webhook import webhook_bp  # noqa: PLC0415

    container = Container(database, settings, shutdown_coordinator=coordinator)
    app.extensions["container"] = container

    # refuse to start against a misconfigured key server
    container.provisioner.startup_check()
    # a migration run elsewhere may have moved the keys; follow it
    container.order_service.sync_endpoint()

    webhook_path = settings.server.webhook_path.rstrip("/")
    app.register_blueprint(webhook_bp, url_prefix=webhook_path)
    log.info("Chat webhook at %s", webhook_path)

    if settings.metrics.enabled:
        from keyvend.metrics.endpoint import metrics_bp  # noqa: PLC0415

        app.register_blueprint(metrics_bp, url_prefix=settings.metrics.path)
        log.info("Metrics at %s", settings.metrics.path)

    container.expiration_worker.start()
    coordinator.on_drained(container.expiration_worker.stop)
