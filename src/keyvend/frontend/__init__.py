"""Conversational front-end: update dispatch, pending steps and the webhook."""

from keyvend.frontend.dispatcher import CommandDispatcher, Sender
from keyvend.frontend.interactions import InteractionStore, PendingInteraction

__all__ = [
    "CommandDispatcher",
    "InteractionStore",
    "PendingInteraction",
    "Sender",
]
