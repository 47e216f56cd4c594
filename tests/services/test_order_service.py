"""Unit tests for keyvend.services.order.OrderService.

Runs the engine against the in-memory store and fake provisioner from
``store_doubles``; the notifier is a MagicMock.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from store_doubles import OPERATOR_ID, START

from keyvend.app.errors import (
    ENDPOINT_MOVED,
    INVALID_TRANSITION,
    MALFORMED,
    NOT_FOUND,
    QUOTA_EXCEEDED,
    KeyvendProblem,
    StoreError,
    ValidationError,
)
from keyvend.core.types import NotificationType, OrderStatus
from keyvend.models import AccessKey, ManagementEndpoint, OwnerProfile
from keyvend.provisioning.base import ProvisioningError

OWNER = 42
PROFILE = OwnerProfile(username="alice", first_name="Alice")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sent(notifier) -> list[NotificationType]:
    return [c.args[0] for c in notifier.notify.call_args_list]


def _approved(service, key_count=2, owner=OWNER):
    placed = service.place(owner, PROFILE, key_count)
    return service.approve(placed.order_id)


# ---------------------------------------------------------------------------
# Place
# ---------------------------------------------------------------------------


class TestPlace:
    @pytest.mark.parametrize("key_count", [1, 2, 3, 5])
    def test_price_is_count_times_price_per_key(self, service, key_count):
        placed = service.place(OWNER, PROFILE, key_count)
        assert placed.price == key_count * 150
        assert service.price_for(key_count) == placed.price

    def test_order_awaits_payment(self, service, store):
        placed = service.place(OWNER, PROFILE, 2)
        order = store.get_order(placed.order_id)
        assert order.status is OrderStatus.AWAITING_PAYMENT
        assert order.profile == PROFILE
        assert order.created_at == START

    def test_notifies_owner_and_operator(self, service, notifier):
        service.place(OWNER, PROFILE, 1)
        assert _sent(notifier) == [
            NotificationType.ORDER_PLACED,
            NotificationType.ORDER_PLACED_OPERATOR,
        ]
        owner_call, operator_call = notifier.notify.call_args_list
        assert owner_call.args[1].chat_id == OWNER
        assert operator_call.args[1].chat_id == OPERATOR_ID
        operator_buttons = operator_call.args[3]
        assert operator_buttons[0][0].callback_data == "approve_order|1"
        assert operator_buttons[1][0].callback_data == "reject_order|1"

    def test_payment_button(self, service, notifier):
        service.place(OWNER, PROFILE, 1)
        owner_buttons = notifier.notify.call_args_list[0].args[3]
        assert owner_buttons[0][0].url == "https://pay.example/keyvend"

    def test_non_positive_count(self, service, store):
        with pytest.raises(ValidationError) as exc_info:
            service.place(OWNER, PROFILE, 0)
        assert exc_info.value.error_type == MALFORMED
        assert store.orders == {}

    def test_counts_metric(self, service, metrics):
        service.place(OWNER, PROFILE, 1)
        metrics.increment.assert_any_call("keyvend_orders_placed_total", labels=None)


class TestQuota:
    def test_exceeded(self, service, store):
        _approved(service, key_count=4)
        with pytest.raises(ValidationError) as exc_info:
            service.place(OWNER, PROFILE, 2)
        assert exc_info.value.error_type == QUOTA_EXCEEDED
        assert "4 active of 5 allowed" in exc_info.value.detail
        assert len(store.orders) == 1

    def test_exactly_at_limit_allowed(self, service):
        _approved(service, key_count=4)
        service.place(OWNER, PROFILE, 1)

    def test_operator_bypasses(self, service):
        _approved(service, key_count=5, owner=OPERATOR_ID)
        service.place(OPERATOR_ID, PROFILE, 3)

    def test_closed_orders_do_not_count(self, service, clock):
        _approved(service, key_count=5)
        clock.advance(days=31)
        service.deactivate_expired()
        assert service.check_quota(OWNER, 5) == 0

    def test_unpaid_orders_do_not_count(self, service):
        service.place(OWNER, PROFILE, 5)
        assert service.check_quota(OWNER) == 0


# ---------------------------------------------------------------------------
# Approve
# ---------------------------------------------------------------------------


class TestApprove:
    def test_persists_keys_and_expiry(self, service, store, clock):
        result = _approved(service, key_count=3)

        order = store.get_order(result.order.id)
        assert order.status is OrderStatus.APPROVED
        assert order.expires_at == clock() + timedelta(days=30)
        assert len(store.find_keys(order.id)) == 3
        assert [k.id for k in result.keys] == ["a1", "a2", "a3"]

    def test_notifies_with_keys(self, service, notifier):
        _approved(service, key_count=2)
        call = notifier.notify.call_args_list[-2]
        assert call.args[0] is NotificationType.ORDER_APPROVED
        assert [k.url for k in call.args[2]["keys"]] == ["ss://a1", "ss://a2"]
        assert notifier.notify.call_args_list[-1].args[0] is NotificationType.ORDER_APPROVED_OPERATOR

    @pytest.mark.parametrize("fail_at", [1, 2, 3])
    def test_provisioning_failure_persists_nothing(self, service, store, provisioner, fail_at, caplog):
        placed = service.place(OWNER, PROFILE, 3)
        provisioner.fail_create_at = fail_at

        with pytest.raises(ProvisioningError):
            service.approve(placed.order_id)

        order = store.get_order(placed.order_id)
        assert order.status is OrderStatus.AWAITING_PAYMENT
        assert order.expires_at is None
        assert store.find_keys(placed.order_id) == []
        assert len(provisioner.created) == fail_at - 1
        if fail_at > 1:
            assert "orphaned" in caplog.text

    def test_store_failure_reports_orphans(self, service, store, provisioner, monkeypatch, caplog):
        placed = service.place(OWNER, PROFILE, 2)

        def _fail(*_args, **_kwargs):
            raise StoreError("approve_order failed: OperationalError")

        monkeypatch.setattr(store, "approve_order", _fail)
        with pytest.raises(StoreError):
            service.approve(placed.order_id)
        assert provisioner.created == ["a1", "a2"]
        assert "2 remote key(s) left orphaned" in caplog.text

    def test_migration_committed_meanwhile(self, service, store, provisioner, caplog):
        placed = service.place(OWNER, PROFILE, 1)
        create = provisioner.create_key

        def _create_then_other_process_migrates(name):
            key = create(name)
            store.endpoint = ManagementEndpoint("https://new.example:2/b")
            return key

        provisioner.create_key = _create_then_other_process_migrates
        with pytest.raises(ValidationError) as exc_info:
            service.approve(placed.order_id)

        assert exc_info.value.error_type == ENDPOINT_MOVED
        assert store.get_order(placed.order_id).status is OrderStatus.AWAITING_PAYMENT
        assert store.keys == {}
        assert "1 remote key(s) left orphaned" in caplog.text

    def test_twice(self, service, provisioner):
        result = _approved(service)
        with pytest.raises(ValidationError) as exc_info:
            service.approve(result.order.id)
        assert exc_info.value.error_type == INVALID_TRANSITION
        assert len(provisioner.created) == 2

    def test_missing_order(self, service):
        with pytest.raises(KeyvendProblem) as exc_info:
            service.approve(999)
        assert exc_info.value.error_type == NOT_FOUND


# ---------------------------------------------------------------------------
# Reject / RejectRenewal
# ---------------------------------------------------------------------------


class TestReject:
    def test_reject_unpaid(self, service, store, provisioner, notifier):
        placed = service.place(OWNER, PROFILE, 1)
        closed = service.reject(placed.order_id)

        assert closed.order.status is OrderStatus.REJECTED
        assert store.get_order(placed.order_id).closed_at == START
        assert provisioner.deleted == []
        assert _sent(notifier)[-2:] == [
            NotificationType.ORDER_REJECTED,
            NotificationType.ORDER_REJECTED_OPERATOR,
        ]

    def test_reject_approved_refused(self, service):
        result = _approved(service)
        with pytest.raises(ValidationError, match="awaiting payment"):
            service.reject(result.order.id)

    def test_reject_renewal_revokes_keys(self, service, store, provisioner, notifier):
        result = _approved(service)
        closed = service.reject_renewal(result.order.id)

        assert store.get_order(result.order.id).status is OrderStatus.REJECTED
        assert sorted(provisioner.deleted) == ["a1", "a2"]
        assert closed.revoked == ["a1", "a2"]
        assert store.pending == {}
        assert _sent(notifier)[-2:] == [
            NotificationType.RENEWAL_DECLINED,
            NotificationType.RENEWAL_DECLINED_OPERATOR,
        ]

    def test_reject_renewal_of_unpaid_refused(self, service):
        placed = service.place(OWNER, PROFILE, 1)
        with pytest.raises(ValidationError, match="only approved"):
            service.reject_renewal(placed.order_id)


# ---------------------------------------------------------------------------
# Renew
# ---------------------------------------------------------------------------


class TestRenew:
    def test_renew_is_additive(self, service, store, clock):
        result = _approved(service)
        before = store.get_order(result.order.id).expires_at

        clock.advance(days=10)
        service.renew(result.order.id)
        service.renew(result.order.id)

        assert store.get_order(result.order.id).expires_at == before + timedelta(days=60)

    def test_keys_untouched(self, service, store, provisioner):
        result = _approved(service)
        service.renew(result.order.id)
        assert [k.id for k in store.find_keys(result.order.id)] == ["a1", "a2"]
        assert provisioner.deleted == []

    def test_renew_closed_refused(self, service):
        placed = service.place(OWNER, PROFILE, 1)
        service.reject(placed.order_id)
        with pytest.raises(ValidationError):
            service.renew(placed.order_id)

    def test_notifies_both(self, service, notifier):
        result = _approved(service)
        service.renew(result.order.id)
        assert _sent(notifier)[-2:] == [
            NotificationType.ORDER_RENEWED,
            NotificationType.ORDER_RENEWED_OPERATOR,
        ]


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class TestListProfile:
    def test_round_trip(self, service):
        result = _approved(service, key_count=3)
        groups = service.list_profile(OWNER)

        assert len(groups) == 1
        assert groups[0].order_id == result.order.id
        assert groups[0].price == 450
        assert [k.id for k in groups[0].keys] == [k.id for k in result.keys]

    def test_grouped_by_order(self, service):
        first = _approved(service, key_count=1)
        second = _approved(service, key_count=2)
        groups = service.list_profile(OWNER)
        assert [g.order_id for g in groups] == [first.order.id, second.order.id]
        assert [len(g.keys) for g in groups] == [1, 2]

    def test_other_owner_empty(self, service):
        _approved(service)
        assert service.list_profile(7) == []


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


class TestNotifyExpiring:
    def test_outside_window(self, service, notifier, clock):
        _approved(service)
        notifier.reset_mock()
        clock.advance(days=26)
        assert service.notify_expiring() == 0
        notifier.notify.assert_not_called()

    def test_once_per_expiry(self, service, notifier, clock):
        _approved(service)
        notifier.reset_mock()
        clock.advance(days=27)

        assert service.notify_expiring() == 1
        assert service.notify_expiring() == 0
        assert _sent(notifier) == [
            NotificationType.RENEWAL_REMINDER,
            NotificationType.RENEWAL_PROMPT_OPERATOR,
        ]
        operator_buttons = notifier.notify.call_args_list[1].args[3]
        assert operator_buttons[0][0].callback_data == "renew_order|1"
        assert operator_buttons[1][0].callback_data == "reject_renewal|1"

    def test_renewed_order_reminded_again(self, service, notifier, clock):
        result = _approved(service)
        clock.advance(days=27)
        service.notify_expiring()
        service.renew(result.order.id)
        clock.advance(days=30)
        assert service.notify_expiring() == 1

    def test_failed_delivery_retried(self, service, notifier, clock):
        _approved(service)
        clock.advance(days=28)
        notifier.notify.return_value = False
        assert service.notify_expiring() == 0
        notifier.notify.return_value = True
        assert service.notify_expiring() == 1

    def test_failed_side_retried_alone(self, service, notifier, clock):
        _approved(service)
        clock.advance(days=28)
        notifier.reset_mock()
        # owner unreachable, operator prompt delivered
        notifier.notify.side_effect = [False, True]
        assert service.notify_expiring() == 1

        notifier.notify.side_effect = None
        assert service.notify_expiring() == 1
        assert service.notify_expiring() == 0
        assert _sent(notifier) == [
            NotificationType.RENEWAL_REMINDER,
            NotificationType.RENEWAL_PROMPT_OPERATOR,
            NotificationType.RENEWAL_REMINDER,
        ]

    def test_already_expired_skipped(self, service, clock):
        _approved(service)
        clock.advance(days=31)
        assert service.notify_expiring() == 0


class TestDeactivateExpired:
    def test_not_yet_due(self, service, clock):
        _approved(service)
        clock.advance(days=29)
        assert service.deactivate_expired() == []

    def test_closes_and_revokes(self, service, store, provisioner, notifier, clock):
        result = _approved(service)
        notifier.reset_mock()
        clock.advance(days=31)

        closed = service.deactivate_expired()

        assert [c.order.id for c in closed] == [result.order.id]
        assert store.get_order(result.order.id).status is OrderStatus.EXPIRED
        assert sorted(provisioner.deleted) == ["a1", "a2"]
        assert _sent(notifier) == [
            NotificationType.ORDER_EXPIRED,
            NotificationType.ORDER_EXPIRED_OPERATOR,
        ]
        assert service.deactivate_expired() == []

    def test_one_failed_delete_does_not_block_siblings(self, service, store, provisioner, clock):
        _approved(service, key_count=3)
        provisioner.fail_delete = {"a2"}
        clock.advance(days=31)

        closed = service.deactivate_expired()[0]

        assert closed.revoked == ["a1", "a3"]
        assert closed.pending == ["a2"]
        assert store.pending["a2"].attempts == 1
        assert store.pending["a2"].last_error == "connection refused"

    def test_not_found_counts_as_revoked(self, service, store, provisioner, clock):
        _approved(service, key_count=1)
        provisioner.missing = {"a1"}
        clock.advance(days=31)
        closed = service.deactivate_expired()[0]
        assert closed.revoked == ["a1"]
        assert store.pending == {}

    def test_rejected_orders_never_selected(self, service, store, clock):
        result = _approved(service)
        service.reject_renewal(result.order.id)
        clock.advance(days=31)
        assert store.list_expiring_keys(timedelta(0), clock()) == []
        assert service.deactivate_expired() == []

    def test_renewed_between_query_and_close(self, service, store, clock, monkeypatch):
        result = _approved(service)
        clock.advance(days=31)
        stale = store.list_expiring_keys(timedelta(0), clock())
        service.renew(result.order.id)
        monkeypatch.setattr(store, "list_expiring_keys", lambda *_a: stale)

        assert service.deactivate_expired() == []
        assert store.get_order(result.order.id).status is OrderStatus.APPROVED

    def test_one_order_failing_does_not_stop_others(self, service, store, clock, monkeypatch):
        first = _approved(service, key_count=1)
        second = _approved(service, key_count=1)
        clock.advance(days=31)
        real_close = store.close_order

        def _close(order_id, *args, **kwargs):
            if order_id == first.order.id:
                raise StoreError("close_order failed: OperationalError")
            return real_close(order_id, *args, **kwargs)

        monkeypatch.setattr(store, "close_order", _close)
        closed = service.deactivate_expired()
        assert [c.order.id for c in closed] == [second.order.id]


class TestRetryRevocations:
    def test_retries_pending(self, service, store, provisioner, clock):
        _approved(service, key_count=2)
        provisioner.fail_delete = {"a1", "a2"}
        clock.advance(days=31)
        service.deactivate_expired()
        assert store.count_pending() == 2

        provisioner.fail_delete = {"a2"}
        assert service.retry_revocations() == 1
        assert list(store.pending) == ["a2"]
        assert store.pending["a2"].attempts == 2

        provisioner.fail_delete = set()
        assert service.retry_revocations() == 1
        assert store.count_pending() == 0

    def test_nothing_pending(self, service):
        assert service.retry_revocations() == 0


# ---------------------------------------------------------------------------
# Scenario
# ---------------------------------------------------------------------------


class TestLifecycleScenario:
    def test_thirty_day_order(self, service, store, provisioner, notifier, clock):
        placed = service.place(OWNER, PROFILE, 2)
        assert placed.price == 300

        approved = service.approve(placed.order_id)
        assert len(store.find_keys(placed.order_id)) == 2
        assert approved.order.status is OrderStatus.APPROVED
        assert approved.order.expires_at == START + timedelta(days=30)

        notifier.reset_mock()
        clock.advance(days=27)
        assert service.notify_expiring() == 1
        assert service.notify_expiring() == 0
        assert _sent(notifier).count(NotificationType.RENEWAL_REMINDER) == 1

        clock.advance(days=4)
        closed = service.deactivate_expired()
        assert store.get_order(placed.order_id).status is OrderStatus.EXPIRED
        assert len(closed) == 1
        assert len(provisioner.deleted) == 2


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


class TestMigrateBackend:
    NEW = ManagementEndpoint("https://new.example:2/b")

    def test_reissues_every_key(self, service, store, provisioner, notifier):
        first = _approved(service, key_count=1)
        second = _approved(service, key_count=2, owner=43)
        notifier.reset_mock()

        summary = service.migrate_backend("https://new.example:2/b")

        assert summary.orders == 2
        assert summary.keys == 3
        assert summary.old_endpoint == "https://old.example:1/a"
        assert summary.new_endpoint == "https://new.example:2/b"
        assert sorted(store.keys) == ["b1", "b2", "b3"]
        assert store.get_order(first.order.id).expires_at == first.order.expires_at
        assert store.get_order(second.order.id).expires_at == second.order.expires_at
        assert store.endpoint == self.NEW
        assert service.provisioner is provisioner.moved_to
        assert _sent(notifier) == [
            NotificationType.KEYS_MIGRATED,
            NotificationType.KEYS_MIGRATED,
            NotificationType.MIGRATION_SUMMARY_OPERATOR,
        ]

    def test_new_server_trust_from_installer_line(self, service, store, provisioner):
        line = '{"apiUrl": "https://new.example:2/b", "certSha256": "%s"}' % ("ab" * 32)
        service.migrate_backend(line)

        pinned = ManagementEndpoint("https://new.example:2/b", cert_sha256="AB" * 32)
        assert provisioner.moved_to.management_endpoint == pinned
        assert store.endpoint == pinned

    def test_failure_changes_nothing(self, service, store, provisioner):
        _approved(service, key_count=2)

        original = provisioner.with_endpoint

        def _failing(endpoint):
            target = original(endpoint)
            target.fail_create_at = 2
            return target

        provisioner.with_endpoint = _failing

        with pytest.raises(ProvisioningError):
            service.migrate_backend("https://new.example:2/b")

        assert sorted(store.keys) == ["a1", "a2"]
        assert store.endpoint == ManagementEndpoint("https://old.example:1/a")
        assert service.provisioner is provisioner

    def test_order_approved_meanwhile_keeps_its_keys(self, service, store, provisioner, caplog):
        _approved(service, key_count=1)
        late = service.place(43, PROFILE, 2)
        original = provisioner.with_endpoint

        def _approve_during_reissue(endpoint):
            target = original(endpoint)
            create = target.create_key

            def _create(name):
                if not target.created:
                    service.approve(late.order_id)
                return create(name)

            target.create_key = _create
            return target

        provisioner.with_endpoint = _approve_during_reissue

        with pytest.raises(ValidationError, match="approved during migration"):
            service.migrate_backend("https://new.example:2/b")

        assert store.get_order(late.order_id).status is OrderStatus.APPROVED
        assert sorted(k.id for k in store.find_keys(late.order_id)) == ["a2", "a3"]
        assert sorted(store.keys) == ["a1", "a2", "a3"]
        assert service.provisioner is provisioner
        assert "migration not persisted" in caplog.text

    def test_migration_elsewhere_wins(self, service, store, provisioner):
        _approved(service, key_count=1)
        original = provisioner.with_endpoint

        def _other_process_commits(endpoint):
            store.endpoint = ManagementEndpoint("https://third.example:3/c")
            return original(endpoint)

        provisioner.with_endpoint = _other_process_commits

        with pytest.raises(ValidationError) as exc_info:
            service.migrate_backend("https://new.example:2/b")
        assert exc_info.value.error_type == ENDPOINT_MOVED
        assert sorted(store.keys) == ["a1"]

    @pytest.mark.parametrize(
        "url",
        ["", "not a url", "ftp://x/y", "https://", "http://new.example:2/b", '{"apiUrl": 1}'],
    )
    def test_rejects_bad_url(self, service, url):
        with pytest.raises(ValidationError) as exc_info:
            service.migrate_backend(url)
        assert exc_info.value.error_type == MALFORMED

    def test_no_active_orders(self, service, provisioner):
        summary = service.migrate_backend(self.NEW)
        assert summary.keys == 0
        assert service.provisioner is provisioner.moved_to


class TestSyncEndpoint:
    def test_records_configured_endpoint(self, service, store, provisioner):
        assert service.sync_endpoint() is provisioner
        assert store.endpoint == ManagementEndpoint("https://old.example:1/a")

    def test_unchanged_endpoint_keeps_provisioner(self, service, provisioner):
        service.sync_endpoint()
        service.sync_endpoint()
        assert provisioner.moved_to is None

    def test_follows_migration_made_elsewhere(self, service, store, provisioner, clock):
        result = _approved(service, key_count=1)
        moved = ManagementEndpoint("https://new.example:2/b", cert_sha256="AB" * 32)
        # what a CLI migration leaves behind
        store.endpoint = moved
        store.keys = {"b9": AccessKey("b9", "n", "ss://b9", order_id=result.order.id)}

        clock.advance(days=31)
        service.deactivate_expired()

        assert provisioner.deleted == []
        assert provisioner.moved_to.deleted == ["b9"]
        assert provisioner.moved_to.management_endpoint == moved
        assert service.provisioner is provisioner.moved_to

    def test_approval_after_migration_elsewhere(self, service, store, provisioner):
        service.sync_endpoint()
        store.endpoint = ManagementEndpoint("https://new.example:2/b")
        placed = service.place(OWNER, PROFILE, 1)

        result = service.approve(placed.order_id)

        assert [k.id for k in result.keys] == ["b1"]
        assert provisioner.created == []


# ---------------------------------------------------------------------------
# Notification failures
# ---------------------------------------------------------------------------


def test_delivery_failure_keeps_state(service, store, notifier):
    notifier.notify.return_value = False
    placed = service.place(OWNER, PROFILE, 1)
    service.approve(placed.order_id)
    assert store.get_order(placed.order_id).status is OrderStatus.APPROVED
