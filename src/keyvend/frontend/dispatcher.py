"""Inbound chat update dispatcher.

Turns a Bot API ``Update`` (a text message or an inline button press)
into one call on the order engine and replies to the sender.  Engine
errors become a reply carrying their detail; anything unexpected is
logged and answered with a generic failure message.

Commands::

    /start, /help      usage
    /order             pick a key count (quota checked first)
    /profile           active keys grouped by order
    /renew <order id>  operator: extend an order by one TTL
    /migrate           operator: the next text message is the new API URL

Buttons carry ``step|data`` (see :mod:`keyvend.core.callbacks`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from keyvend.app.errors import MALFORMED, UNAUTHORIZED, KeyvendProblem, ValidationError
from keyvend.core.callbacks import decode_callback, encode_callback
from keyvend.core.types import OPERATOR_STEPS, NotificationType, Step
from keyvend.logging import audit_events
from keyvend.models.order import OwnerProfile
from keyvend.notifications.gateway import Button
from keyvend.notifications.recipient import Recipient
from keyvend.provisioning.base import ProvisioningError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from keyvend.config.settings import OrderSettings
    from keyvend.frontend.interactions import InteractionStore
    from keyvend.services.notification import NotificationService
    from keyvend.services.order import OrderService

log = logging.getLogger(__name__)

GENERIC_FAILURE = "Something went wrong, please try again later."


@dataclass(frozen=True)
class Sender:
    """Who sent an update and where to answer."""

    user_id: int
    chat_id: int
    profile: OwnerProfile

    @classmethod
    def from_message(cls, message: dict[str, Any], user: dict[str, Any] | None = None) -> Sender:
        chat = message.get("chat") or {}
        user = user or message.get("from") or chat
        return cls(
            user_id=int(user["id"]),
            chat_id=int(chat.get("id", user["id"])),
            profile=OwnerProfile(
                username=user.get("username"),
                first_name=user.get("first_name"),
                last_name=user.get("last_name"),
            ),
        )

    @property
    def recipient(self) -> Recipient:
        return Recipient(chat_id=self.chat_id, username=self.profile.username)


class CommandDispatcher:
    """Maps chat commands and button presses to order engine operations.

    Parameters
    ----------
    service:
        The order lifecycle engine.
    interactions:
        Per-owner pending step (key-count menu, migration URL prompt).
    notifier:
        Replies to the sender.
    order_settings:
        Key-count menu, price and TTL shown in the menu.

    """

    def __init__(
        self,
        service: OrderService,
        interactions: InteractionStore,
        notifier: NotificationService,
        order_settings: OrderSettings,
    ) -> None:
        self._service = service
        self._interactions = interactions
        self._notifier = notifier
        self._settings = order_settings

    # -- entry point ---------------------------------------------------------

    def dispatch(self, update: dict[str, Any]) -> Sender | None:
        """Handle one update.  Returns the sender, or ``None`` if ignored."""
        if "callback_query" in update:
            query = update["callback_query"]
            message = query.get("message") or {}
            sender = Sender.from_message(message, query.get("from"))
            self._guard(sender, lambda: self._on_callback(sender, query))
            self._notifier.acknowledge(query.get("id", ""))
            return sender

        message = update.get("message")
        if not message or "text" not in message:
            log.debug("Ignoring update %s without text", update.get("update_id"))
            return None
        sender = Sender.from_message(message)
        self._guard(sender, lambda: self._on_text(sender, message["text"].strip()))
        return sender

    def _guard(self, sender: Sender, handler) -> None:
        try:
            handler()
        except KeyvendProblem as exc:
            log.info("Request from %d refused: %s", sender.user_id, exc.detail)
            self._reply(sender, NotificationType.ERROR, {"detail": exc.detail})
        except ProvisioningError as exc:
            log.error("Key provisioning failed: %s", exc.detail, extra={"owner_id": sender.user_id})  # noqa: TRY400
            self._reply(
                sender,
                NotificationType.ERROR,
                {"detail": f"Key provisioning failed: {exc.detail}"},
            )
        except Exception:  # noqa: BLE001
            log.exception("Unhandled error while handling update from %d", sender.user_id)
            self._reply(sender, NotificationType.ERROR, {"detail": GENERIC_FAILURE})

    # -- text ----------------------------------------------------------------

    def _on_text(self, sender: Sender, text: str) -> None:
        if not text.startswith("/"):
            self._on_plain_text(sender, text)
            return

        command, _, rest = text.partition(" ")
        # "/order@my_bot" in group chats
        command = command.split("@", 1)[0].lower()
        args = rest.split()

        if command in ("/start", "/help"):
            self._reply(sender, NotificationType.HELP, {})
        elif command == "/order":
            self._start_order(sender)
        elif command == "/profile":
            self._show_profile(sender)
        elif command == "/renew":
            self._require_operator(sender, Step.RENEW_ORDER)
            if len(args) != 1:
                msg = "Usage: /renew <order id>"
                raise ValidationError(MALFORMED, msg)
            self._service.renew(_parse_order_id(args[0]))
        elif command == "/migrate":
            self._require_operator(sender, Step.MIGRATE_KEYS)
            self._interactions.put(sender.user_id, Step.MIGRATE_KEYS)
            self._reply(
                sender,
                NotificationType.MIGRATION_PROMPT_OPERATOR,
                {},
                [[self._cancel_button()]],
            )
        else:
            self._reply(sender, NotificationType.HELP, {})

    def _on_plain_text(self, sender: Sender, text: str) -> None:
        pending = self._interactions.get(sender.user_id)
        if pending is None or pending.step is not Step.MIGRATE_KEYS:
            self._reply(sender, NotificationType.HELP, {})
            return
        self._require_operator(sender, Step.MIGRATE_KEYS)
        self._interactions.pop(sender.user_id)
        self._service.migrate_backend(text)

    def _start_order(self, sender: Sender) -> None:
        self._service.check_quota(sender.user_id)
        self._interactions.put(sender.user_id, Step.SELECT_KEY_AMOUNT)
        menu = [
            Button(str(n), encode_callback(Step.SELECT_KEY_AMOUNT, n))
            for n in self._settings.key_count_choices
        ]
        self._reply(
            sender,
            NotificationType.CHOOSE_KEY_COUNT,
            {
                "price_per_key": self._settings.price_per_key,
                "currency": self._settings.currency,
                "ttl_days": self._settings.ttl_days,
            },
            [menu, [self._cancel_button()]],
        )

    def _show_profile(self, sender: Sender) -> None:
        self._reply(
            sender,
            NotificationType.PROFILE,
            {
                "orders": self._service.list_profile(sender.user_id),
                "currency": self._settings.currency,
            },
        )

    # -- callbacks -----------------------------------------------------------

    def _on_callback(self, sender: Sender, query: dict[str, Any]) -> None:
        try:
            callback = decode_callback(query.get("data") or "")
        except ValueError as exc:
            raise ValidationError(MALFORMED, str(exc)) from exc

        log.info(
            "Callback %s|%s from %d",
            callback.step.value,
            callback.data,
            sender.user_id,
            extra={"step": callback.step.value},
        )
        if callback.step in OPERATOR_STEPS:
            self._require_operator(sender, callback.step)

        message_id = (query.get("message") or {}).get("message_id")

        if callback.step is Step.CANCEL:
            self._interactions.clear(sender.user_id)
            self._notifier.clear_buttons(sender.chat_id, message_id)
            self._reply(sender, NotificationType.CANCELLED, {})
            return

        if callback.step is Step.SELECT_KEY_AMOUNT:
            pending = self._interactions.pop(sender.user_id)
            if pending is None or pending.step is not Step.SELECT_KEY_AMOUNT:
                msg = "This menu has expired, use /order again."
                raise ValidationError(MALFORMED, msg)
            key_count = _parse_int(callback.data, "key count")
            self._notifier.clear_buttons(sender.chat_id, message_id)
            self._service.place(sender.user_id, sender.profile, key_count)
            return

        order_id = _parse_order_id(callback.data)
        if callback.step is Step.APPROVE_ORDER:
            self._service.approve(order_id)
        elif callback.step is Step.REJECT_ORDER:
            self._service.reject(order_id)
        elif callback.step is Step.RENEW_ORDER:
            self._service.renew(order_id)
        elif callback.step is Step.REJECT_RENEWAL:
            self._service.reject_renewal(order_id)
        else:
            msg = f"Unsupported button action {callback.step.value!r}"
            raise ValidationError(MALFORMED, msg)
        self._notifier.clear_buttons(sender.chat_id, message_id)

    # -- helpers -------------------------------------------------------------

    def _require_operator(self, sender: Sender, step: Step) -> None:
        if self._service.is_operator(sender.user_id):
            return
        audit_events.operator_action_refused(sender.user_id, step.value)
        msg = "This action is available to the operator only."
        raise KeyvendProblem(UNAUTHORIZED, msg, 403)

    def _reply(
        self,
        sender: Sender,
        notification_type: NotificationType,
        context: dict[str, Any],
        buttons: Sequence[Sequence[Button]] = (),
    ) -> None:
        self._notifier.notify(notification_type, sender.recipient, context, buttons)

    @staticmethod
    def _cancel_button() -> Button:
        return Button("Cancel", encode_callback(Step.CANCEL))


def _parse_int(raw: str, what: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        msg = f"Invalid {what}: {raw!r}"
        raise ValidationError(MALFORMED, msg) from None


def _parse_order_id(raw: str) -> int:
    order_id = _parse_int(raw.lstrip("#"), "order id")
    if order_id <= 0:
        msg = f"Invalid order id: {raw!r}"
        raise ValidationError(MALFORMED, msg)
    return order_id
