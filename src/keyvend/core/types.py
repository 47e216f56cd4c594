"""Enumerated types for the keyvend persistence and dispatch layers.

All enums inherit from :class:`enum.StrEnum` so their ``.value`` is a
plain string that psycopg serialises as TEXT and that survives the
``step|data`` callback encoding unchanged.
"""

from __future__ import annotations

from enum import StrEnum

# ---------------------------------------------------------------------------
# Order
# ---------------------------------------------------------------------------


class OrderStatus(StrEnum):
    AWAITING_PAYMENT = "awaiting_payment"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationType(StrEnum):
    """Outbound message kinds.  Each value names a template file."""

    HELP = "help"
    CHOOSE_KEY_COUNT = "choose_key_count"
    ORDER_PLACED = "order_placed"
    ORDER_PLACED_OPERATOR = "order_placed_operator"
    ORDER_APPROVED = "order_approved"
    ORDER_APPROVED_OPERATOR = "order_approved_operator"
    ORDER_REJECTED = "order_rejected"
    ORDER_REJECTED_OPERATOR = "order_rejected_operator"
    ORDER_RENEWED = "order_renewed"
    ORDER_RENEWED_OPERATOR = "order_renewed_operator"
    RENEWAL_DECLINED = "renewal_declined"
    RENEWAL_DECLINED_OPERATOR = "renewal_declined_operator"
    RENEWAL_REMINDER = "renewal_reminder"
    RENEWAL_PROMPT_OPERATOR = "renewal_prompt_operator"
    ORDER_EXPIRED = "order_expired"
    ORDER_EXPIRED_OPERATOR = "order_expired_operator"
    KEYS_MIGRATED = "keys_migrated"
    MIGRATION_SUMMARY_OPERATOR = "migration_summary_operator"
    MIGRATION_PROMPT_OPERATOR = "migration_prompt_operator"
    PROFILE = "profile"
    CANCELLED = "cancelled"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Conversational front-end
# ---------------------------------------------------------------------------


class Step(StrEnum):
    """Interaction steps and inline-button actions (``step|data``)."""

    SELECT_KEY_AMOUNT = "select_key_amount"
    APPROVE_ORDER = "approve_order"
    REJECT_ORDER = "reject_order"
    RENEW_ORDER = "renew_order"
    REJECT_RENEWAL = "reject_renewal"
    CANCEL = "cancel"
    MIGRATE_KEYS = "migrate_keys"


OPERATOR_STEPS: frozenset[Step] = frozenset(
    {
        Step.APPROVE_ORDER,
        Step.REJECT_ORDER,
        Step.RENEW_ORDER,
        Step.REJECT_RENEWAL,
        Step.MIGRATE_KEYS,
    }
)
