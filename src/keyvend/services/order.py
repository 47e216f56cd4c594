"""Order service -- the order lifecycle engine.

Places, approves, rejects, renews and expires orders; provisions and
revokes their access keys; and migrates every live key to a new
provisioning endpoint.  The service keeps no order state between
calls: each operation re-reads the store, acts, and writes back through
one atomic repository call.

Remote provisioning has no transactional semantics.  Keys created
remotely whose local persistence then fails are reported through the
``orphaned_keys`` audit event for manual cleanup; keys whose remote
deletion fails stay in ``pending_key_revocations`` until
:meth:`OrderService.retry_revocations` confirms them.
"""

from __future__ import annotations

import logging
import threading
import urllib.parse
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from keyvend.app.errors import (
    INVALID_TRANSITION,
    MALFORMED,
    QUOTA_EXCEEDED,
    KeyvendProblem,
    ValidationError,
)
from keyvend.core.callbacks import encode_callback
from keyvend.core.state import assert_transition, log_transition
from keyvend.core.types import NotificationType, OrderStatus, Step
from keyvend.logging import audit_events
from keyvend.models.access_key import AccessKey
from keyvend.models.order import Order
from keyvend.notifications.gateway import Button
from keyvend.notifications.recipient import Recipient
from keyvend.provisioning.base import ProvisioningError, parse_endpoint
from keyvend.provisioning.names import generate_key_name
from keyvend.repositories.notice import OPERATOR, OWNER

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from keyvend.config.settings import ChatSettings, OrderSettings, SchedulerSettings
    from keyvend.metrics.collector import MetricsCollector
    from keyvend.models.access_key import KeyContext
    from keyvend.models.endpoint import ManagementEndpoint
    from keyvend.models.order import OwnerProfile
    from keyvend.provisioning.base import KeyProvisioner
    from keyvend.repositories.endpoint import EndpointRepository
    from keyvend.repositories.notice import NoticeRepository
    from keyvend.repositories.order import OrderRepository
    from keyvend.repositories.revocation import RevocationRepository
    from keyvend.services.notification import NotificationService

log = logging.getLogger(__name__)

_RETRY_BATCH_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlacedOrder:
    order_id: int
    key_count: int
    price: int


@dataclass(frozen=True)
class ApprovedOrder:
    order: Order
    keys: list[AccessKey]


@dataclass(frozen=True)
class ClosedOrder:
    """A closed order and the outcome of revoking its keys.

    ``pending`` lists key ids whose remote deletion failed and were
    left queued for :meth:`OrderService.retry_revocations`.
    """

    order: Order
    keys: list[AccessKey]
    revoked: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OrderKeys:
    """One order's live keys, as shown on the owner's profile."""

    order_id: int
    price: int
    key_count: int
    expires_at: datetime
    keys: list[AccessKey]


@dataclass(frozen=True)
class MigrationSummary:
    old_endpoint: str
    new_endpoint: str
    orders: int
    keys: int


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class OrderService:
    """Order lifecycle engine.

    Parameters
    ----------
    orders, revocations, notices:
        Store repositories.
    provisioner:
        Remote key-management client.  Replaced in place by
        :meth:`migrate_backend` and by :meth:`sync_endpoint`.
    notifier:
        Outbound chat messages.  Delivery failures never undo the state
        change they follow.
    order_settings, chat_settings, scheduler_settings:
        Pricing/quota/TTL, operator identity and payment link, and the
        reminder window.
    endpoints:
        The recorded management endpoint.  Without it the provisioner
        never follows a migration made by another process.
    clock:
        Returns the current aware UTC time.  Injected by tests.

    """

    def __init__(  # noqa: PLR0913
        self,
        orders: OrderRepository,
        revocations: RevocationRepository,
        notices: NoticeRepository,
        provisioner: KeyProvisioner,
        notifier: NotificationService,
        order_settings: OrderSettings,
        chat_settings: ChatSettings,
        scheduler_settings: SchedulerSettings,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = _utcnow,
        endpoints: EndpointRepository | None = None,
    ) -> None:
        self._orders = orders
        self._revocations = revocations
        self._notices = notices
        self._provisioner = provisioner
        self._provisioner_lock = threading.Lock()
        self._migration_lock = threading.Lock()
        self._notifier = notifier
        self._settings = order_settings
        self._chat = chat_settings
        self._scheduler = scheduler_settings
        self._metrics = metrics
        self._clock = clock
        self._endpoints = endpoints

    # -- accessors -----------------------------------------------------------

    @property
    def provisioner(self) -> KeyProvisioner:
        with self._provisioner_lock:
            return self._provisioner

    def sync_endpoint(self) -> KeyProvisioner:
        """Switch to the management endpoint recorded in the store.

        Picks up a migration made by another process.  When nothing is
        recorded yet the current endpoint is recorded.  Returns the
        provisioner to use for the next remote call.
        """
        if self._endpoints is None:
            return self.provisioner
        stored = self._endpoints.load()
        with self._provisioner_lock:
            current = self._provisioner
            if stored is None:
                stored = self._endpoints.seed(current.management_endpoint)
            if stored != current.management_endpoint:
                log.warning(
                    "Management endpoint changed elsewhere; now using %s",
                    urllib.parse.urlsplit(stored.api_url).netloc,
                )
                self._provisioner = current.with_endpoint(stored)
            return self._provisioner

    @property
    def operator(self) -> Recipient:
        return Recipient(chat_id=self._chat.operator_id)

    def is_operator(self, user_id: int) -> bool:
        return user_id == self._chat.operator_id

    def price_for(self, key_count: int) -> int:
        return key_count * self._settings.price_per_key

    # -- place ---------------------------------------------------------------

    def check_quota(self, owner_id: int, key_count: int = 1) -> int:
        """Raise ``QUOTA_EXCEEDED`` unless *key_count* more keys fit.

        Returns the number of keys the owner currently holds.  The
        operator is never limited.
        """
        active = self._orders.count_active_keys(owner_id, self._clock())
        if self.is_operator(owner_id):
            return active
        limit = self._settings.max_keys_per_owner
        if active + key_count > limit:
            msg = (
                f"Key quota exceeded: {active} active of {limit} allowed, "
                f"{key_count} requested"
            )
            raise ValidationError(QUOTA_EXCEEDED, msg)
        return active

    def place(self, owner_id: int, profile: OwnerProfile, key_count: int) -> PlacedOrder:
        """Create an order awaiting payment and tell the owner and operator."""
        if key_count <= 0:
            msg = f"Key count must be positive (got {key_count})"
            raise ValidationError(MALFORMED, msg)

        self.check_quota(owner_id, key_count)

        price = self.price_for(key_count)
        order_id = self._orders.create_order(
            owner_id,
            profile,
            key_count,
            price,
            self._clock(),
        )
        log.info("Order %d placed by %d (%d keys, price %d)", order_id, owner_id, key_count, price)
        audit_events.order_placed(order_id, owner_id, key_count, price)
        self._count("keyvend_orders_placed_total")

        context = self._context(
            order_id=order_id,
            owner_id=owner_id,
            profile=profile,
            price=price,
            key_count=key_count,
        )
        self._notifier.notify(
            NotificationType.ORDER_PLACED,
            Recipient.for_owner(owner_id, profile),
            context,
            self._payment_buttons(),
        )
        self._notifier.notify(
            NotificationType.ORDER_PLACED_OPERATOR,
            self.operator,
            context,
            [
                [Button("Approve", encode_callback(Step.APPROVE_ORDER, order_id))],
                [Button("Reject", encode_callback(Step.REJECT_ORDER, order_id))],
            ],
        )
        return PlacedOrder(order_id=order_id, key_count=key_count, price=price)

    # -- approve -------------------------------------------------------------

    def approve(self, order_id: int) -> ApprovedOrder:
        """Provision ``key_count`` keys and approve the order atomically.

        Keys are created one after another.  If any creation or the
        final store write fails, nothing is persisted and the ids
        already created remotely are reported as orphaned, as are keys
        made obsolete by a migration that committed in between.
        """
        order = self._orders.get_order(order_id)
        self._require_transition(order, OrderStatus.APPROVED)

        provisioner = self.sync_endpoint()
        created: list[AccessKey] = []
        for _ in range(order.key_count):
            try:
                key = provisioner.create_key(generate_key_name())
            except ProvisioningError as exc:
                self._count("keyvend_provisioning_failures_total", operation="create")
                self._report_orphans(created, f"approval aborted: {exc.detail}", order_id)
                raise
            log.info("Created key %s (%s) for order %d", key.id, key.name, order_id)
            created.append(AccessKey(id=key.id, name=key.name, url=key.url, order_id=order_id))

        expires_at = self._clock() + self._settings.ttl
        try:
            approved = self._orders.approve_order(
                order_id,
                created,
                expires_at,
                issued_by=provisioner.endpoint,
            )
        except KeyvendProblem as exc:
            self._report_orphans(created, f"approval not persisted: {exc.detail}", order_id)
            raise

        log_transition(order_id, order.status, OrderStatus.APPROVED)
        audit_events.order_approved(order_id, order.owner_id, [k.id for k in created], expires_at)
        self._count("keyvend_orders_approved_total")

        context = self._order_context(approved, created)
        self._notifier.notify(
            NotificationType.ORDER_APPROVED,
            Recipient.for_order(approved),
            context,
        )
        self._notifier.notify(NotificationType.ORDER_APPROVED_OPERATOR, self.operator, context)
        return ApprovedOrder(order=approved, keys=created)

    # -- reject --------------------------------------------------------------

    def reject(self, order_id: int) -> ClosedOrder:
        """Reject an order still awaiting payment."""
        order = self._orders.get_order(order_id)
        if order.status is not OrderStatus.AWAITING_PAYMENT:
            msg = (
                f"Order {order_id} is {order.status.value}; "
                "only orders awaiting payment can be rejected"
            )
            raise ValidationError(INVALID_TRANSITION, msg)

        closed = self._close(order, OrderStatus.REJECTED, reason="payment rejected")
        context = self._order_context(closed.order, closed.keys)
        self._notifier.notify(
            NotificationType.ORDER_REJECTED,
            Recipient.for_order(order),
            context,
        )
        self._notifier.notify(NotificationType.ORDER_REJECTED_OPERATOR, self.operator, context)
        return closed

    def reject_renewal(self, order_id: int) -> ClosedOrder:
        """Decline renewal of an approved order and revoke its keys now."""
        order = self._orders.get_order(order_id)
        if order.status is not OrderStatus.APPROVED:
            msg = f"Order {order_id} is {order.status.value}; only approved orders can be declined"
            raise ValidationError(INVALID_TRANSITION, msg)

        closed = self._close(order, OrderStatus.REJECTED, reason="renewal declined")
        context = self._order_context(closed.order, closed.keys)
        self._notifier.notify(
            NotificationType.RENEWAL_DECLINED,
            Recipient.for_order(order),
            context,
        )
        self._notifier.notify(NotificationType.RENEWAL_DECLINED_OPERATOR, self.operator, context)
        return closed

    # -- renew ---------------------------------------------------------------

    def renew(self, order_id: int) -> Order:
        """Extend an approved order by one TTL.  Keys are untouched."""
        renewed = self._orders.renew_order(order_id, self._settings.ttl)
        log.info("Order %d renewed until %s", order_id, renewed.expires_at)
        audit_events.order_renewed(order_id, renewed.owner_id, renewed.expires_at)
        self._count("keyvend_orders_renewed_total")

        context = self._order_context(renewed, ())
        self._notifier.notify(
            NotificationType.ORDER_RENEWED,
            Recipient.for_order(renewed),
            context,
        )
        self._notifier.notify(NotificationType.ORDER_RENEWED_OPERATOR, self.operator, context)
        return renewed

    # -- profile -------------------------------------------------------------

    def list_profile(self, owner_id: int) -> list[OrderKeys]:
        """Live keys of the owner, grouped by order in order-id order."""
        groups = _group_by_order(
            self._orders.list_active_keys_for_owner(owner_id, self._clock()),
        )
        return [
            OrderKeys(
                order_id=ctxs[0].order_id,
                price=ctxs[0].price,
                key_count=ctxs[0].key_count,
                expires_at=ctxs[0].expires_at,
                keys=[c.key for c in ctxs],
            )
            for ctxs in groups.values()
        ]

    # -- scheduled jobs ------------------------------------------------------

    def notify_expiring(self) -> int:
        """Send one renewal reminder per order and expiry instant.

        Covers orders expiring within the reminder window but not yet
        expired.  The owner's reminder and the operator's renewal prompt
        are claimed separately; a failed delivery releases only its own
        claim so the next run retries that side alone.  Returns the
        number of orders for which anything was sent.
        """
        now = self._clock()
        groups = _group_by_order(
            self._orders.list_expiring_keys(self._scheduler.notify_window, now),
        )
        sent = 0
        for order_id, ctxs in groups.items():
            head = ctxs[0]
            if head.expires_at <= now:
                continue
            context = self._group_context(ctxs)
            messages = (
                (
                    OWNER,
                    NotificationType.RENEWAL_REMINDER,
                    Recipient.for_owner(head.owner_id, head.profile),
                    self._payment_buttons(),
                ),
                (
                    OPERATOR,
                    NotificationType.RENEWAL_PROMPT_OPERATOR,
                    self.operator,
                    self._renewal_buttons(order_id),
                ),
            )
            delivered = 0
            for audience, kind, recipient, buttons in messages:
                try:
                    if not self._notices.try_claim(order_id, head.expires_at, audience):
                        continue
                    if self._notifier.notify(kind, recipient, context, buttons):
                        delivered += 1
                    else:
                        self._notices.release(order_id, head.expires_at, audience)
                except KeyvendProblem as exc:
                    log.error(  # noqa: TRY400
                        "Renewal %s notice for order %d failed: %s",
                        audience,
                        order_id,
                        exc.detail,
                        extra={"order_id": order_id, "owner_id": head.owner_id},
                    )
            if delivered:
                sent += 1
                log.info("Renewal reminder sent for order %d (%d of 2)", order_id, delivered)
        return sent

    def deactivate_expired(self) -> list[ClosedOrder]:
        """Expire every approved order past its expiry and revoke its keys.

        Each order is handled on its own; one failing order does not
        stop the rest.  An order renewed after the query is left alone.
        """
        now = self._clock()
        groups = _group_by_order(self._orders.list_expiring_keys(timedelta(0), now))
        closed_orders: list[ClosedOrder] = []
        for order_id, ctxs in groups.items():
            head = ctxs[0]
            order = Order(
                id=order_id,
                owner_id=head.owner_id,
                key_count=head.key_count,
                price=head.price,
                status=OrderStatus.APPROVED,
                profile=head.profile,
                expires_at=head.expires_at,
            )
            try:
                closed = self._close(
                    order,
                    OrderStatus.EXPIRED,
                    expires_before=now,
                    reason="expired",
                )
            except ValidationError as exc:
                log.info("Order %d not expired: %s", order_id, exc.detail)
                continue
            except KeyvendProblem as exc:
                log.error(  # noqa: TRY400
                    "Expiring order %d failed: %s",
                    order_id,
                    exc.detail,
                    extra={"order_id": order_id, "owner_id": head.owner_id},
                )
                continue

            context = self._order_context(closed.order, closed.keys)
            self._notifier.notify(
                NotificationType.ORDER_EXPIRED,
                Recipient.for_order(order),
                context,
            )
            self._notifier.notify(NotificationType.ORDER_EXPIRED_OPERATOR, self.operator, context)
            closed_orders.append(closed)
        return closed_orders

    def retry_revocations(self, limit: int = _RETRY_BATCH_SIZE) -> int:
        """Retry queued remote deletions; return how many are now confirmed."""
        pending = self._revocations.list_pending(limit)
        if not pending:
            return 0
        revoked, failed = self._revoke((p.key_id, p.order_id) for p in pending)
        log.info("Revocation retry: %d confirmed, %d still pending", len(revoked), len(failed))
        return len(revoked)

    # -- migration -----------------------------------------------------------

    def migrate_backend(self, new_endpoint: str | ManagementEndpoint) -> MigrationSummary:
        """Re-issue every live key at a new management endpoint.

        *new_endpoint* is a :class:`ManagementEndpoint` or the text an
        operator pastes (see :func:`parse_endpoint`); only its own trust
        settings apply to the new server.  All replacements are
        provisioned first.  If any creation fails the migration aborts
        with no local change and the keys already created at the new
        endpoint are reported as orphaned.  Otherwise every key row is
        swapped and the new endpoint recorded in one transaction, orders
        keep their ``expires_at``, and every process switches over on
        its next remote call.
        """
        if isinstance(new_endpoint, str):
            try:
                new_endpoint = parse_endpoint(new_endpoint)
            except ValueError as exc:
                msg = f"Not a management API endpoint: {exc}"
                raise ValidationError(MALFORMED, msg) from exc
        api_url = new_endpoint.api_url

        with self._migration_lock:
            old = self.sync_endpoint()
            target = old.with_endpoint(new_endpoint)
            target.startup_check()

            active = self._orders.list_active_orders()
            replacements: dict[int, list[AccessKey]] = {}
            created: list[AccessKey] = []
            for order in active:
                for _ in range(order.key_count):
                    try:
                        key = target.create_key(generate_key_name())
                    except ProvisioningError as exc:
                        self._count("keyvend_provisioning_failures_total", operation="create")
                        self._report_orphans(created, f"migration aborted: {exc.detail}")
                        raise
                    access_key = AccessKey(id=key.id, name=key.name, url=key.url, order_id=order.id)
                    created.append(access_key)
                    replacements.setdefault(order.id, []).append(access_key)

            try:
                written = self._orders.replace_all_keys(
                    replacements,
                    new_endpoint,
                    replacing=old.endpoint,
                )
            except KeyvendProblem as exc:
                self._report_orphans(created, f"migration not persisted: {exc.detail}")
                raise

            with self._provisioner_lock:
                self._provisioner = target

        summary = MigrationSummary(
            old_endpoint=old.endpoint,
            new_endpoint=api_url,
            orders=len(active),
            keys=written,
        )
        log.warning("Provisioning migrated: %d orders, %d keys", summary.orders, summary.keys)
        audit_events.backend_migrated(old.endpoint, api_url, summary.orders, summary.keys)

        for order in active:
            self._notifier.notify(
                NotificationType.KEYS_MIGRATED,
                Recipient.for_order(order),
                self._order_context(order, replacements.get(order.id, [])),
            )
        self._notifier.notify(
            NotificationType.MIGRATION_SUMMARY_OPERATOR,
            self.operator,
            {"orders": summary.orders, "keys": summary.keys, "endpoint": api_url},
        )
        return summary

    # -- internals -----------------------------------------------------------

    def _require_transition(self, order: Order, target: OrderStatus) -> None:
        try:
            assert_transition(order.status, target)
        except ValueError as exc:
            msg = f"Order {order.id}: {exc}"
            raise ValidationError(INVALID_TRANSITION, msg) from exc

    def _close(
        self,
        order: Order,
        status: OrderStatus,
        *,
        expires_before: datetime | None = None,
        reason: str | None = None,
    ) -> ClosedOrder:
        """Close *order* as *status*, then revoke its keys one by one."""
        self._require_transition(order, status)
        closed_at = self._clock()
        keys = self._orders.close_order(
            order.id,
            status,
            closed_at,
            expected=order.status,
            expires_before=expires_before,
        )
        log_transition(order.id, order.status, status, reason=reason)
        audit_events.order_closed(order.id, order.owner_id, status.value, [k.id for k in keys])
        self._count("keyvend_orders_closed_total", status=status.value)

        revoked, pending = self._revoke((k.id, order.id) for k in keys)
        return ClosedOrder(
            order=replace(order, status=status, closed_at=closed_at, expires_at=None),
            keys=keys,
            revoked=revoked,
            pending=pending,
        )

    def _revoke(self, targets: Iterable[tuple[str, int | None]]) -> tuple[list[str], list[str]]:
        """Delete each key remotely, independently of the others.

        A confirmed delete (or a 404) clears the key's queue row; a
        failure is recorded on it and left for the retry job.
        """
        provisioner = self.sync_endpoint()
        revoked: list[str] = []
        pending: list[str] = []
        for key_id, order_id in targets:
            try:
                provisioner.delete_key(key_id)
            except ProvisioningError as exc:
                if not exc.not_found:
                    pending.append(key_id)
                    self._count("keyvend_provisioning_failures_total", operation="delete")
                    audit_events.revocation_failed(key_id, order_id, exc.detail)
                    try:
                        self._revocations.record_failure(key_id, exc.detail)
                    except KeyvendProblem as store_exc:
                        log.error("Could not record failure for key %s: %s", key_id, store_exc.detail)  # noqa: TRY400
                    continue
                log.info("Key %s already gone at the provisioning service", key_id)

            try:
                self._revocations.mark_revoked(key_id)
            except KeyvendProblem as exc:
                # Remote delete done; the retry job will see a 404 next time.
                log.error("Could not clear revocation of key %s: %s", key_id, exc.detail)  # noqa: TRY400
            revoked.append(key_id)
        return revoked, pending

    def _report_orphans(
        self,
        keys: Sequence[AccessKey],
        reason: str,
        order_id: int | None = None,
    ) -> None:
        if not keys:
            return
        log.error(
            "%d remote key(s) left orphaned: %s",
            len(keys),
            reason,
            extra={"order_id": order_id, "key_ids": [k.id for k in keys]},
        )
        audit_events.orphaned_keys([k.id for k in keys], reason, order_id=order_id)

    def _payment_buttons(self) -> list[list[Button]]:
        if not self._chat.payment_url:
            return []
        return [[Button("Pay", url=self._chat.payment_url)]]

    def _renewal_buttons(self, order_id: int) -> list[list[Button]]:
        return [
            [
                Button(
                    f"Renew for {self._settings.ttl_days} days",
                    encode_callback(Step.RENEW_ORDER, order_id),
                ),
            ],
            [Button("Decline renewal", encode_callback(Step.REJECT_RENEWAL, order_id))],
        ]

    def _context(self, **values: Any) -> dict[str, Any]:  # noqa: ANN401
        values.setdefault("keys", [])
        values.setdefault("expires_at", None)
        return {
            **values,
            "currency": self._settings.currency,
            "payment_url": self._chat.payment_url,
            "ttl_days": self._settings.ttl_days,
        }

    def _order_context(self, order: Order, keys: Sequence[AccessKey]) -> dict[str, Any]:
        return self._context(
            order_id=order.id,
            owner_id=order.owner_id,
            profile=order.profile,
            price=order.price,
            key_count=order.key_count,
            expires_at=order.expires_at,
            keys=list(keys),
        )

    def _group_context(self, ctxs: Sequence[KeyContext]) -> dict[str, Any]:
        head = ctxs[0]
        return self._context(
            order_id=head.order_id,
            owner_id=head.owner_id,
            profile=head.profile,
            price=head.price,
            key_count=head.key_count,
            expires_at=head.expires_at,
            keys=[c.key for c in ctxs],
        )

    def _count(self, name: str, **labels: str) -> None:
        if self._metrics:
            self._metrics.increment(name, labels=labels or None)


def _group_by_order(contexts: Iterable[KeyContext]) -> dict[int, list[KeyContext]]:
    """Group key rows by order, keeping first-seen order."""
    groups: dict[int, list[KeyContext]] = {}
    for ctx in contexts:
        groups.setdefault(ctx.order_id, []).append(ctx)
    return groups
