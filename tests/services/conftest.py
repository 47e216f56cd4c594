"""Fixtures wiring the order engine to the in-memory doubles."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from store_doubles import OPERATOR_ID, Clock, FakeProvisioner, InMemoryStore

from keyvend.config.settings import ChatSettings, OrderSettings, SchedulerSettings
from keyvend.services.order import OrderService

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def order_settings():
    return OrderSettings(
        ttl_days=30,
        price_per_key=150,
        max_keys_per_owner=5,
        key_count_choices=(1, 2, 3),
        currency="RUB",
    )


@pytest.fixture
def chat_settings():
    return ChatSettings(
        enabled=True,
        api_url="https://api.telegram.org/bot123:abc",
        timeout_seconds=5.0,
        operator_id=OPERATOR_ID,
        payment_url="https://pay.example/keyvend",
        templates_path=None,
    )


@pytest.fixture
def scheduler_settings():
    return SchedulerSettings(
        enabled=True,
        loop_interval_seconds=5,
        notify_before_expiry_seconds=3 * 86400,
        notify_interval_seconds=30,
        deactivate_interval_seconds=3600,
        revocation_retry_interval_seconds=600,
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.notify.return_value = True
    return mock


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def metrics():
    return MagicMock()


@pytest.fixture
def service(  # noqa: PLR0913
    store,
    provisioner,
    notifier,
    order_settings,
    chat_settings,
    scheduler_settings,
    clock,
    metrics,
):
    return OrderService(
        store,
        store,
        store,
        provisioner,
        notifier,
        order_settings,
        chat_settings,
        scheduler_settings,
        metrics=metrics,
        clock=clock,
        endpoints=store,
    )
