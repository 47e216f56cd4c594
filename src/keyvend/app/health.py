"""``/livez`` and ``/healthz`` probes.

``/healthz`` answers 503 when the order store is unreachable, the key
server circuit breaker is open or the expiration worker thread died;
a backlog of pending revocations is reported but never fails the probe.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from flask import Blueprint, current_app, jsonify

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

    from keyvend.app.context import Container

log = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__)


def _version() -> str:
    from keyvend import __version__  # noqa: PLC0415

    return __version__


def _database(container: Container) -> tuple[str, bool]:
    try:
        container.db.fetch_value("SELECT 1")
    except Exception:  # noqa: BLE001
        return "disconnected", False
    return "connected", True


def _pending_revocations(container: Container) -> tuple[int | None, bool]:
    try:
        return container.revocations.count_pending(), True
    except Exception:  # noqa: BLE001
        log.debug("Pending revocation count unavailable")
        return None, True


def _provisioning_circuit(container: Container) -> tuple[str | None, bool]:
    state = getattr(container.order_service.provisioner, "state", None)
    return state, state != "open"


_CHECKS = (
    ("database", _database),
    ("pending_revocations", _pending_revocations),
    ("provisioning_circuit", _provisioning_circuit),
)


@health_bp.route("/livez")
def livez() -> ResponseReturnValue:
    return jsonify({"alive": True, "version": _version()}), 200


@health_bp.route("/healthz")
def healthz() -> ResponseReturnValue:
    body: dict = {"status": "ok", "version": _version()}
    container = current_app.extensions.get("container")
    if container is None:
        return jsonify(body), 200

    healthy = True
    checks: dict = {}
    for name, check in _CHECKS:
        value, ok = check(container)
        healthy = healthy and ok
        if value is not None:
            checks[name] = value
    body["checks"] = checks

    coordinator = current_app.extensions.get("shutdown_coordinator")
    if coordinator is not None:
        body["shutting_down"] = coordinator.is_shutting_down

    if container.settings.scheduler.enabled:
        alive = container.expiration_worker.is_running()
        body["workers"] = {"expiration_worker": "alive" if alive else "dead"}
        healthy = healthy and alive

    if not healthy:
        body["status"] = "degraded"
    return jsonify(body), 200 if healthy else 503
