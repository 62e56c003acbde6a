"""Append-only planning-cycle log (start row plus completion row)."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from models import CycleStatus, PlanningCycle
from store import GoalStore

logger = logging.getLogger("autopilot.cycle_log")

INTERRUPTED_REASON = "Process restarted during active planning cycle"


def log_cycle_start(store: GoalStore, goal_id: int) -> int | None:
    """Insert a start row for a goal cycle; returns its id, or *None* on failure."""
    try:
        cycle = store.insert_cycle({"goal_id": goal_id}, CycleStatus.ACTIVE)
    except Exception:
        logger.warning(
            "Failed to log cycle start", exc_info=True, extra={"goal": goal_id}
        )
        return None
    return cycle.id


def log_cycle_complete(
    store: GoalStore,
    cycle_id: int | None,
    goal_id: int,
    status: CycleStatus = CycleStatus.COMPLETED,
    outcomes: dict[str, Any] | None = None,
) -> None:
    """Insert the completion row linked to *cycle_id*.  Never raises."""
    if cycle_id is None:
        return
    try:
        store.insert_cycle(
            {"goal_id": goal_id},
            status,
            parent_id=cycle_id,
            outcomes=outcomes,
            completed_at=datetime.now(UTC),
        )
    except Exception:
        logger.warning(
            "Failed to log cycle completion",
            exc_info=True,
            extra={"goal": goal_id, "cycle": cycle_id},
        )


def log_cycle_interrupted(store: GoalStore, cycle: PlanningCycle) -> PlanningCycle:
    """Close an unfinished *cycle* with an ``interrupted`` child row."""
    return store.insert_cycle(
        cycle.goals,
        CycleStatus.INTERRUPTED,
        parent_id=cycle.id,
        outcomes={"reason": INTERRUPTED_REASON},
        completed_at=datetime.now(UTC),
    )


def find_unfinished_cycles(store: GoalStore) -> list[PlanningCycle]:
    """Start rows that have no child row yet."""
    cycles = store.list_cycles()
    closed = {c.parent_id for c in cycles if c.parent_id is not None}
    return [c for c in cycles if c.parent_id is None and c.id not in closed]
