"""Counters for order, provisioning, notification and worker events.

Values live in process memory (one set per gunicorn worker) and are
rendered in the Prometheus text format by :meth:`MetricsCollector.export`.
"""

from __future__ import annotations

import threading
import time

LabelSet = tuple[tuple[str, str], ...]

HELP: dict[str, str] = {
    "keyvend_orders_placed_total": "Orders created from the chat menu",
    "keyvend_orders_approved_total": "Orders approved by the operator",
    "keyvend_orders_renewed_total": "Orders whose expiry was extended",
    "keyvend_orders_closed_total": "Orders moved to a terminal status",
    "keyvend_provisioning_failures_total": "Failed calls to the key server",
    "keyvend_notification_failures_total": "Chat messages that could not be delivered",
    "keyvend_worker_runs_total": "Background job executions",
    "keyvend_worker_errors_total": "Background job executions that raised",
    "keyvend_http_requests_total": "HTTP requests served",
    "keyvend_pending_revocations": "Keys waiting for a retried delete",
    "keyvend_interactions_open": "Chat menus and prompts awaiting an answer",
    "keyvend_webhook_updates_in_flight": "Chat updates being dispatched",
}


def _labels(labels: dict | None) -> LabelSet:
    return tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


def _render(name: str, labels: LabelSet, value: float) -> str:
    if not labels:
        return f"{name} {value}"
    body = ",".join(
        '{}="{}"'.format(k, v.replace("\\", "\\\\").replace('"', '\\"')) for k, v in labels
    )
    return f"{name}{{{body}}} {value}"


class MetricsCollector:
    """Thread-safe named counters, each split into labelled series."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._series: dict[str, dict[LabelSet, int]] = {}
        self._started = time.time()

    def increment(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = _labels(labels)
        with self._lock:
            series = self._series.setdefault(name, {})
            series[key] = series.get(key, 0) + amount

    def get(self, name: str, labels: dict | None = None) -> int:
        with self._lock:
            return self._series.get(name, {}).get(_labels(labels), 0)

    def export(self, gauges: dict[str, float] | None = None) -> str:
        """Render counters plus point-in-time *gauges* sampled by the caller."""
        out = [
            "# HELP keyvend_uptime_seconds Seconds since the collector was created",
            "# TYPE keyvend_uptime_seconds gauge",
            f"keyvend_uptime_seconds {time.time() - self._started:.1f}",
        ]
        for name, value in sorted((gauges or {}).items()):
            if name in HELP:
                out.append(f"# HELP {name} {HELP[name]}")
            out.append(f"# TYPE {name} gauge")
            out.append(_render(name, (), value))

        with self._lock:
            snapshot = {name: dict(series) for name, series in self._series.items()}
        for name in sorted(snapshot):
            if name in HELP:
                out.append(f"# HELP {name} {HELP[name]}")
            out.append(f"# TYPE {name} counter")
            out.extend(_render(name, key, value) for key, value in sorted(snapshot[name].items()))

        return "\n".join(out) + "\n"
