"""Tests for kill_switch.py."""

from __future__ import annotations

import pytest

from kill_switch import (
    KILL_SWITCH_KEY,
    KillSwitchActiveError,
    KillSwitchGuard,
    activate_kill_switch,
    deactivate_kill_switch,
)
from store import GoalStore


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Toggling
# ---------------------------------------------------------------------------


class TestToggle:
    def test_inactive_by_default(self, store: GoalStore) -> None:
        assert KillSwitchGuard(store, ttl=0).is_active() is False

    def test_activate_sets_state_and_audit(self, store: GoalStore) -> None:
        activate_kill_switch(store, "runaway spend", "ops")

        value = store.get_state(KILL_SWITCH_KEY)
        assert value["active"] is True
        assert value["reason"] == "runaway spend"
        assert value["triggered_by"] == "ops"
        assert "updated_at" in value
        audit = store.list_kill_switch_audit()
        assert [(a.action, a.reason) for a in audit] == [("activate", "runaway spend")]

    def test_deactivate(self, store: GoalStore) -> None:
        activate_kill_switch(store, "stop")
        deactivate_kill_switch(store, "resume")

        assert KillSwitchGuard(store, ttl=0).is_active() is False
        assert [a.action for a in store.list_kill_switch_audit()] == [
            "activate",
            "deactivate",
        ]

    def test_malformed_value_counts_as_inactive(self, store: GoalStore) -> None:
        store.set_state(KILL_SWITCH_KEY, "yes")
        assert KillSwitchGuard(store, ttl=0).is_active() is False


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class TestGuard:
    def test_assert_active_raises_when_engaged(self, store: GoalStore) -> None:
        activate_kill_switch(store, "stop")
        with pytest.raises(KillSwitchActiveError, match="Kill switch is active"):
            KillSwitchGuard(store, ttl=0).assert_active()

    def test_assert_active_passes_when_released(self, store: GoalStore) -> None:
        KillSwitchGuard(store, ttl=0).assert_active()

    def test_lookup_is_cached_for_ttl(self, store: GoalStore) -> None:
        clock = _Clock()
        guard = KillSwitchGuard(store, ttl=1.0, clock=clock)
        assert guard.is_active() is False

        activate_kill_switch(store, "stop")
        clock.now += 0.5
        assert guard.is_active() is False

        clock.now += 0.6
        assert guard.is_active() is True

    def test_clear_cache_forces_reload(self, store: GoalStore) -> None:
        guard = KillSwitchGuard(store, ttl=60, clock=_Clock())
        assert guard.is_active() is False
        activate_kill_switch(store, "stop")
        guard.clear_cache()
        assert guard.is_active() is True
