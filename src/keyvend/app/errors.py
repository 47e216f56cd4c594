"""Errors of the order lifecycle and the order store.

Every error is a :class:`KeyvendProblem`.  The chat dispatcher relays
``detail`` to the user as-is; over HTTP the same object is rendered as
``application/problem+json`` (RFC 7807) by :func:`register_error_handlers`.

::

    raise ValidationError(QUOTA_EXCEEDED, "Key quota exceeded: 9 active, 2 requested")
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Flask, Response, g, jsonify, request
from werkzeug.exceptions import HTTPException

log = logging.getLogger(__name__)

_URN = "urn:keyvend:error:"

ENDPOINT_MOVED = f"{_URN}endpointMoved"
INVALID_TRANSITION = f"{_URN}invalidTransition"
MALFORMED = f"{_URN}malformed"
NOT_FOUND = f"{_URN}notFound"
QUOTA_EXCEEDED = f"{_URN}quotaExceeded"
SERVER_INTERNAL = f"{_URN}serverInternal"
STORE_FAILURE = f"{_URN}storeFailure"
UNAUTHORIZED = f"{_URN}unauthorized"

PROBLEM_CONTENT_TYPE = "application/problem+json"


class KeyvendProblem(Exception):
    """Base error: a problem type URN, a user-facing detail and an HTTP status.

    ``error_type`` is one of the URNs above, or ``"about:blank"`` for
    plain HTTP errors (then ``title`` carries the status phrase).
    """

    def __init__(
        self,
        error_type: str,
        detail: str,
        status: int = 400,
        *,
        title: str | None = None,
    ) -> None:
        super().__init__(detail)
        self.error_type = error_type
        self.detail = detail
        self.status = status
        self.title = title

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "type": self.error_type,
            "detail": self.detail,
            "status": self.status,
        }
        if self.title is not None:
            body["title"] = self.title
        return body

    def to_response(self) -> Response:
        body = self.to_dict()
        request_id = g.get("request_id")
        if request_id:
            body["instance"] = f"urn:keyvend:request:{request_id}"
        resp = jsonify(body)
        resp.status_code = self.status
        resp.headers["Content-Type"] = PROBLEM_CONTENT_TYPE
        resp.headers["Cache-Control"] = "no-store"
        return resp


class ValidationError(KeyvendProblem):
    """Refused before anything was written (quota, bad input, stale transition)."""

    def __init__(self, error_type: str, detail: str) -> None:
        super().__init__(error_type, detail)


class StoreError(KeyvendProblem):
    """The order store failed; the transaction was rolled back."""

    def __init__(self, detail: str, *, error_type: str = STORE_FAILURE, status: int = 500) -> None:
        super().__init__(error_type, detail, status)


class NotFoundError(StoreError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, error_type=NOT_FOUND, status=404)


def register_error_handlers(app: Flask) -> None:
    """Render every error escaping a view as problem JSON."""

    def problem(exc: KeyvendProblem) -> Response:
        return exc.to_response()

    def http_error(exc: HTTPException) -> Response:
        return KeyvendProblem(
            "about:blank",
            exc.description or exc.name,
            exc.code or 500,
            title=exc.name,
        ).to_response()

    def crash(exc: Exception) -> Response:  # noqa: ARG001
        # logged with traceback here; the body never carries internals
        log.exception("Unhandled error on %s %s", request.method, request.path)
        return KeyvendProblem(
            SERVER_INTERNAL,
            "Internal error, the update was not processed",
            500,
        ).to_response()

    app.register_error_handler(KeyvendProblem, problem)
    app.register_error_handler(HTTPException, http_error)
    app.register_error_handler(Exception, crash)
