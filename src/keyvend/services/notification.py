"""Notification service: render a template and deliver it to a chat.

Graceful degradation:
- ``chat.enabled=False`` -> rendered text is logged, nothing is sent
- delivery failure -> logged and counted, never raised to the caller
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from jinja2 import TemplateError

from keyvend.notifications.gateway import NotificationError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from keyvend.config.settings import ChatSettings
    from keyvend.core.types import NotificationType
    from keyvend.metrics.collector import MetricsCollector
    from keyvend.notifications.gateway import Button, ChatGateway
    from keyvend.notifications.recipient import Recipient
    from keyvend.notifications.renderer import TemplateRenderer

log = logging.getLogger(__name__)


class NotificationService:
    """Renders and sends chat messages on behalf of the order engine."""

    def __init__(
        self,
        gateway: ChatGateway,
        renderer: TemplateRenderer,
        settings: ChatSettings,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._gateway = gateway
        self._renderer = renderer
        self._settings = settings
        self._metrics = metrics

    def notify(
        self,
        notification_type: NotificationType,
        recipient: Recipient,
        context: dict[str, Any],
        buttons: Sequence[Sequence[Button]] = (),
    ) -> bool:
        """Render and send one message.

        Returns
        -------
        bool
            ``True`` when the chat API accepted the message (or chat is
            disabled and the message was only logged).

        """
        try:
            text = self._renderer.render(notification_type, context)
        except TemplateError:
            log.exception("Failed to render %s", notification_type.value)
            return False

        if not self._settings.enabled:
            log.info(
                "Chat disabled; %s for %s not sent",
                notification_type.value,
                recipient.display(),
                extra={"notification_text": text},
            )
            return True

        try:
            self._gateway.send(recipient, text, buttons)
        except NotificationError as exc:
            log.error(  # noqa: TRY400
                "Failed to deliver %s to %s: %s",
                notification_type.value,
                recipient.display(),
                exc.detail,
            )
            if self._metrics:
                self._metrics.increment(
                    "keyvend_notification_failures_total",
                    labels={"type": notification_type.value},
                )
            return False

        log.debug("Delivered %s to %s", notification_type.value, recipient.display())
        return True

    def acknowledge(self, callback_id: str, text: str | None = None) -> None:
        """Answer a button press so the client stops its spinner."""
        if not self._settings.enabled or not callback_id:
            return
        try:
            self._gateway.answer_callback(callback_id, text)
        except NotificationError as exc:
            log.warning("Failed to answer callback %s: %s", callback_id, exc.detail)

    def clear_buttons(self, chat_id: int, message_id: int | None) -> None:
        """Drop the inline keyboard of a handled message so it is not pressed twice."""
        if not self._settings.enabled or message_id is None:
            return
        try:
            self._gateway.clear_buttons(chat_id, message_id)
        except NotificationError as exc:
            log.warning("Failed to clear buttons of message %s: %s", message_id, exc.detail)
