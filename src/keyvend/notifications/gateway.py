"""Chat Bot HTTP API client.

Sends plain-text messages with optional inline keyboards and
acknowledges button presses.  Every call is a single JSON POST to
``{api_url}/{method}``; ``api_url`` already carries the bot token
(``https://api.telegram.org/bot<token>``).
"""

from __future__ import annotations

import contextlib
import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

    from keyvend.config.settings import ChatSettings
    from keyvend.notifications.recipient import Recipient

log = logging.getLogger(__name__)


class NotificationError(Exception):
    """Outbound message could not be delivered."""

    def __init__(self, detail: str, *, retryable: bool = False) -> None:
        self.detail = detail
        self.retryable = retryable
        super().__init__(detail)


@dataclass(frozen=True)
class Button:
    """One inline keyboard button: either a callback or a URL link."""

    text: str
    callback_data: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, str]:
        if self.url:
            return {"text": self.text, "url": self.url}
        return {"text": self.text, "callback_data": self.callback_data or ""}


def keyboard(rows: Sequence[Sequence[Button]]) -> dict[str, Any]:
    """Build a ``reply_markup`` object from button rows."""
    return {"inline_keyboard": [[b.to_dict() for b in row] for row in rows if row]}


class ChatGateway:
    """Thin synchronous client for the chat Bot API."""

    def __init__(self, settings: ChatSettings) -> None:
        self._settings = settings

    def send(
        self,
        recipient: Recipient,
        text: str,
        buttons: Sequence[Sequence[Button]] = (),
    ) -> dict[str, Any]:
        """Send *text* to *recipient*; raise :class:`NotificationError` on failure."""
        payload: dict[str, Any] = {
            "chat_id": recipient.resolve(),
            "text": text,
            "disable_web_page_preview": True,
        }
        if buttons:
            payload["reply_markup"] = keyboard(buttons)
        return self._call("sendMessage", payload)

    def answer_callback(self, callback_id: str, text: str | None = None) -> None:
        """Stop the client-side spinner on a pressed inline button."""
        payload: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        self._call("answerCallbackQuery", payload)

    def clear_buttons(self, chat_id: int, message_id: int) -> None:
        """Remove the inline keyboard from an already sent message."""
        self._call(
            "editMessageReplyMarkup",
            {"chat_id": chat_id, "message_id": message_id, "reply_markup": {"inline_keyboard": []}},
        )

    def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._settings.api_url.rstrip('/')}/{method}"
        req = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )

        try:
            with urllib.request.urlopen(req, timeout=self._settings.timeout_seconds) as resp:  # noqa: S310
                body = json.loads(resp.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as exc:
            detail = ""
            with contextlib.suppress(Exception):
                detail = exc.read().decode("utf-8", errors="replace")[:300]
            msg = f"Chat API {method} returned HTTP {exc.code}: {detail}"
            raise NotificationError(msg, retryable=exc.code >= 500) from exc  # noqa: PLR2004
        except (urllib.error.URLError, OSError) as exc:
            msg = f"Chat API {method} unreachable: {exc}"
            raise NotificationError(msg, retryable=True) from exc
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            msg = f"Chat API {method} returned invalid JSON: {exc}"
            raise NotificationError(msg) from exc

        if not body.get("ok", False):
            msg = f"Chat API {method} refused: {body.get('description', 'unknown error')}"
            raise NotificationError(msg)
        return body.get("result") or {}
