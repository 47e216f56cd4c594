"""``GET {metrics.path}``: counters plus a few live gauges."""

from __future__ import annotations

import logging

from flask import Blueprint

from keyvend.app.context import get_container

log = logging.getLogger(__name__)

metrics_bp = Blueprint("metrics", __name__)

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def _gauges(container) -> dict[str, float]:
    gauges: dict[str, float] = {
        "keyvend_interactions_open": len(container.interactions),
        "keyvend_webhook_updates_in_flight": container.shutdown_coordinator.in_flight_count,
    }
    try:
        gauges["keyvend_pending_revocations"] = container.revocations.count_pending()
    except Exception:  # noqa: BLE001
        log.debug("Pending revocation count unavailable for metrics")
    return gauges


@metrics_bp.route("", methods=["GET"])
def get_metrics():
    container = get_container()
    if container.metrics is None:
        return "# metrics disabled\n", 200, {"Content-Type": CONTENT_TYPE}
    return container.metrics.export(_gauges(container)), 200, {"Content-Type": CONTENT_TYPE}
