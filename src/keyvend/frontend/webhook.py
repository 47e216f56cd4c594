"""Webhook endpoint receiving chat updates.

``POST {server.webhook_path}`` with one ``Update`` object as JSON.
When ``server.webhook_secret`` is set, the
``X-Telegram-Bot-Api-Secret-Token`` header must match it.

The endpoint always answers 200 once the update is accepted: the chat
platform redelivers on any other status, and engine errors have
already been answered in the chat.
"""

from __future__ import annotations

import hmac
import logging

from flask import Blueprint, current_app, g, jsonify, request

from keyvend.app.context import get_container
from keyvend.app.errors import MALFORMED, UNAUTHORIZED, KeyvendProblem

log = logging.getLogger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"

webhook_bp = Blueprint("webhook", __name__)


def _check_secret() -> None:
    settings = current_app.config["KEYVEND_SETTINGS"]
    expected = settings.server.webhook_secret
    if not expected:
        return
    supplied = request.headers.get(SECRET_HEADER, "")
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        log.warning("Webhook call with a bad secret token from %s", request.remote_addr)
        raise KeyvendProblem(UNAUTHORIZED, "Invalid webhook secret token", 401)


@webhook_bp.route("", methods=["POST"])
def receive_update():
    """Dispatch one chat update."""
    _check_secret()

    update = request.get_json(silent=True)
    if not isinstance(update, dict):
        raise KeyvendProblem(MALFORMED, "Request body must be a JSON object", 400)

    container = get_container()
    coordinator = container.shutdown_coordinator
    with coordinator.track("webhook_update"):
        sender = container.dispatcher.dispatch(update)
    if sender is not None:
        g.owner_id = sender.user_id
    return jsonify({"ok": True}), 200
