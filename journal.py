"""Per-goal checkpoint journal with a mandatory-success write contract."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from pydantic import ValidationError

from models import JournalEntry, SubGoalStatus
from store import GoalStore

logger = logging.getLogger("autopilot.journal")

MAX_CHECKPOINT_ATTEMPTS = 3


class CheckpointError(RuntimeError):
    """Raised when a checkpoint could not be persisted after every attempt."""


def journal_key(goal_id: int) -> str:
    return f"journal:{goal_id}"


class Journal:
    """Append-only record of terminal sub-goal outcomes, keyed per goal.

    The journal is what startup recovery trusts about work finished before
    a crash.  :meth:`checkpoint` either persists the entry or raises
    :class:`CheckpointError` after exactly ``MAX_CHECKPOINT_ATTEMPTS``
    attempts; the caller must stop progressing that goal when it raises.
    """

    def __init__(
        self,
        store: GoalStore,
        retry_delay: float = 0.5,
        sleep_fn: Callable[[int | float], Coroutine[Any, Any, None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._retry_delay = retry_delay
        self._sleep = sleep_fn

    async def checkpoint(self, goal_id: int, entry: JournalEntry) -> None:
        """Append *entry* to the goal's journal, retrying on failure."""
        key = journal_key(goal_id)
        last_error: Exception | None = None
        for attempt in range(1, MAX_CHECKPOINT_ATTEMPTS + 1):
            try:
                entries = self._store.get_state(key) or []
                entries.append(entry.model_dump(mode="json"))
                self._store.set_state(key, entries)
                return
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Checkpoint attempt %d/%d failed for goal %d: %s",
                    attempt,
                    MAX_CHECKPOINT_ATTEMPTS,
                    goal_id,
                    exc,
                    extra={"goal": goal_id, "sub_goal": entry.sub_goal_id},
                )
                if attempt < MAX_CHECKPOINT_ATTEMPTS:
                    await self._sleep(self._retry_delay)

        raise CheckpointError(
            f"Checkpoint failed after {MAX_CHECKPOINT_ATTEMPTS} attempts for goal "
            f"{goal_id}; halting to prevent uncheckpointed progress. "
            f"Last error: {last_error}"
        ) from last_error

    def read_journal(self, goal_id: int) -> list[JournalEntry]:
        """Return the goal's journal entries in write order."""
        raw = self._store.get_state(journal_key(goal_id)) or []
        entries: list[JournalEntry] = []
        for item in raw:
            try:
                entries.append(JournalEntry.model_validate(item))
            except ValidationError:
                logger.warning(
                    "Skipping malformed journal entry for goal %d",
                    goal_id,
                    extra={"goal": goal_id},
                )
        return entries

    def clear_journal(self, goal_id: int) -> None:
        self._store.delete_state(journal_key(goal_id))

    def get_completed_sub_goal_ids(self, goal_id: int) -> set[int]:
        """Ids of sub-goals journaled with status ``completed``."""
        return {
            entry.sub_goal_id
            for entry in self.read_journal(goal_id)
            if entry.status == SubGoalStatus.COMPLETED
        }
