from __future__ import annotations

import pytest

from lfg.ttl_store import TTLStore


class Clock:
    def __init__(self, t: float = 1000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return TTLStore(60, clock)


def test_put_then_get_is_live(store):
    store.put("a", 1)
    assert store.get("a") == (1, True)


def test_missing_key(store):
    assert store.get("nope") == (None, False)
    assert "nope" not in store


def test_lapsed_entry_is_reported_but_kept_until_sweep(store, clock):
    store.put("a", 1)
    clock.t += 60
    assert store.get("a") == (1, False)
    assert len(store) == 1


def test_put_restarts_expiry(store, clock):
    store.put("a", 1)
    clock.t += 50
    store.put("a", 2)
    clock.t += 50
    assert store.get("a") == (2, True)


def test_touch_keeps_value_and_refreshes(store, clock):
    store.put("a", [1, 2])
    clock.t += 59
    assert store.touch("a")
    clock.t += 59
    assert store.get("a") == ([1, 2], True)
    assert not store.touch("missing")


def test_explicit_ttl_overrides_default(store, clock):
    store.put("short", 1, ttl=5)
    clock.t += 5
    assert store.get("short") == (1, False)


def test_sweep_returns_removed_entries(store, clock):
    store.put("old", "x")
    clock.t += 30
    store.put("new", "y")
    clock.t += 30

    removed = store.sweep()

    assert removed == {"old": "x"}
    assert "old" not in store
    assert store.get("new") == ("y", True)


def test_sweep_is_idempotent(store, clock):
    store.put("a", 1)
    clock.t += 120
    assert store.sweep() == {"a": 1}
    assert store.sweep() == {}


def test_expired_lists_without_removing(store, clock):
    store.put("a", 1)
    store.put("b", 2, ttl=500)
    clock.t += 100
    assert store.expired() == ["a"]
    assert len(store) == 2


def test_items_is_a_snapshot(store):
    store.put("a", 1)
    store.put("b", 2)
    for key, _ in store.items():
        store.pop(key)
    assert len(store) == 0


def test_non_positive_ttl_rejected(clock):
    with pytest.raises(ValueError):
        TTLStore(0, clock)
