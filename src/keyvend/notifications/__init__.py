"""Outbound chat notifications: rendering, addressing and delivery."""

from keyvend.notifications.gateway import Button, ChatGateway, NotificationError, keyboard
from keyvend.notifications.recipient import Recipient
from keyvend.notifications.renderer import TemplateRenderer

__all__ = [
    "Button",
    "ChatGateway",
    "NotificationError",
    "Recipient",
    "TemplateRenderer",
    "keyboard",
]
