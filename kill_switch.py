"""Global kill switch gating reasoning and tool calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from store import GoalStore

logger = logging.getLogger("autopilot.kill_switch")

KILL_SWITCH_KEY = "kill_switch"


class KillSwitchActiveError(RuntimeError):
    """Raised when an operation is attempted while the kill switch is on."""

    def __init__(self) -> None:
        super().__init__("Kill switch is active. No new operations allowed.")


class KillSwitchGuard:
    """Cached reader for the ``kill_switch`` state key.

    Lookups are cached for *ttl* seconds so hot paths (every reasoning
    turn and every tool call) do not hit the store each time.
    """

    def __init__(
        self,
        store: GoalStore,
        ttl: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self._clock = clock
        self._cached: bool | None = None
        self._cached_at = 0.0

    def is_active(self) -> bool:
        now = self._clock()
        if self._cached is not None and now - self._cached_at < self._ttl:
            return self._cached
        value = self._store.get_state(KILL_SWITCH_KEY)
        self._cached = bool(isinstance(value, dict) and value.get("active"))
        self._cached_at = now
        return self._cached

    def assert_active(self) -> None:
        """Raise :class:`KillSwitchActiveError` if the switch is engaged."""
        if self.is_active():
            raise KillSwitchActiveError()

    def clear_cache(self) -> None:
        self._cached = None
        self._cached_at = 0.0


def _set_kill_switch(
    store: GoalStore, active: bool, reason: str, triggered_by: str
) -> None:
    store.set_state(
        KILL_SWITCH_KEY,
        {
            "active": active,
            "reason": reason,
            "triggered_by": triggered_by,
            "updated_at": datetime.now(UTC).isoformat(),
        },
    )
    store.insert_kill_switch_audit(
        "activate" if active else "deactivate", reason, triggered_by
    )


def activate_kill_switch(
    store: GoalStore, reason: str, triggered_by: str = "cli"
) -> None:
    """Engage the kill switch and record an audit row."""
    _set_kill_switch(store, True, reason, triggered_by)
    logger.warning("Kill switch activated by %s: %s", triggered_by, reason)


def deactivate_kill_switch(
    store: GoalStore, reason: str, triggered_by: str = "cli"
) -> None:
    """Release the kill switch and record an audit row."""
    _set_kill_switch(store, False, reason, triggered_by)
    logger.info("Kill switch deactivated by %s: %s", triggered_by, reason)
