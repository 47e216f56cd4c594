"""Unit tests for keyvend.frontend.interactions.InteractionStore."""

from __future__ import annotations

from keyvend.core.types import Step
from keyvend.frontend.interactions import InteractionStore


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestInteractionStore:
    def test_put_and_get(self):
        store = InteractionStore()
        store.put(42, Step.SELECT_KEY_AMOUNT)
        assert store.get(42).step is Step.SELECT_KEY_AMOUNT
        assert store.get(7) is None

    def test_put_replaces(self):
        store = InteractionStore()
        store.put(42, Step.SELECT_KEY_AMOUNT)
        store.put(42, Step.MIGRATE_KEYS)
        assert store.get(42).step is Step.MIGRATE_KEYS
        assert len(store) == 1

    def test_expires_after_ttl(self):
        clock = _Clock()
        store = InteractionStore(ttl_seconds=60, clock=clock)
        store.put(42, Step.SELECT_KEY_AMOUNT)
        clock.now = 59.0
        assert store.get(42) is not None
        clock.now = 60.0
        assert store.get(42) is None

    def test_len_purges_expired(self):
        clock = _Clock()
        store = InteractionStore(ttl_seconds=10, clock=clock)
        store.put(1, Step.SELECT_KEY_AMOUNT)
        clock.now = 5.0
        store.put(2, Step.SELECT_KEY_AMOUNT)
        clock.now = 12.0
        assert len(store) == 1

    def test_least_recently_used_evicted(self):
        store = InteractionStore(max_entries=2)
        store.put(1, Step.SELECT_KEY_AMOUNT)
        store.put(2, Step.SELECT_KEY_AMOUNT)
        store.get(1)
        store.put(3, Step.SELECT_KEY_AMOUNT)
        assert store.get(2) is None
        assert store.get(1) is not None
        assert store.get(3) is not None

    def test_pop(self):
        store = InteractionStore()
        store.put(42, Step.SELECT_KEY_AMOUNT)
        assert store.pop(42).step is Step.SELECT_KEY_AMOUNT
        assert store.pop(42) is None

    def test_clear(self):
        store = InteractionStore()
        store.put(42, Step.MIGRATE_KEYS)
        assert store.clear(42) is True
        assert store.clear(42) is False
