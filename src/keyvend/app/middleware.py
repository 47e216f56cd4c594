"""Per-request bookkeeping: request ids, access log lines, request counter.

Probe endpoints (``/livez``, ``/healthz`` and the metrics path) are polled
every few seconds by the orchestrator, so their successful hits are logged
at DEBUG rather than INFO.
"""

from __future__ import annotations

import logging
import re
import time
from uuid import uuid4

from flask import Flask, g, request

access_log = logging.getLogger("keyvend.access")

_INBOUND_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_PROBES = frozenset({"/livez", "/healthz"})


def _request_id() -> str:
    """Reuse the proxy's ``X-Request-ID`` when it is a plain token."""
    inbound = request.headers.get("X-Request-ID", "")
    return inbound if _INBOUND_ID.match(inbound) else uuid4().hex


def _level(status: int, path: str, probes: frozenset[str]) -> int:
    if status >= 500:  # noqa: PLR2004
        return logging.ERROR
    if status >= 400:  # noqa: PLR2004
        return logging.WARNING
    return logging.DEBUG if path in probes else logging.INFO


def register_request_hooks(app: Flask) -> None:
    settings = app.config.get("KEYVEND_SETTINGS")
    probes = _PROBES
    if settings is not None and settings.metrics.enabled:
        probes = probes | {settings.metrics.path}

    @app.before_request
    def _begin() -> None:
        g.request_id = _request_id()
        g.start_time = time.monotonic()

    @app.after_request
    def _finish(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Request-ID"] = g.get("request_id") or uuid4().hex

        status = response.status_code
        collector = getattr(app.extensions.get("container"), "metrics", None)
        if collector is not None:
            collector.increment(
                "keyvend_http_requests_total",
                labels={"method": request.method, "status": str(status)},
            )

        started = g.get("start_time")
        duration_ms = (time.monotonic() - started) * 1000 if started is not None else 0.0
        access_log.log(
            _level(status, request.path, probes),
            "%s %s %s %.1fms",
            request.method,
            request.path,
            status,
            duration_ms,
            extra={
                "status": status,
                "duration_ms": round(duration_ms, 1),
                "owner_id": g.get("owner_id"),
            },
        )
        return response
