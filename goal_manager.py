"""Goal and sub-goal lifecycle: creation, decomposition, and scheduling."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from events import EventBus, EventType, publish_safely
from models import (
    SATISFIED_STATUSES,
    TERMINAL_STATUSES,
    Goal,
    GoalSource,
    GoalStatus,
    SubGoal,
    SubGoalStatus,
)
from planner import DecompositionError, plan_goal_decomposition
from reasoning import ModelRouter
from store import GoalStore
from tools import ToolRegistry

logger = logging.getLogger("autopilot.goal_manager")

_UNSET: Any = object()


class GoalNotFoundError(LookupError):
    """Raised when an operation names a goal that does not exist."""


class GoalManager:
    """Single source of truth for goal and sub-goal state.

    Decomposition asks the planner for positional descriptors and links
    them in two phases: every sub-goal is inserted with an empty
    ``depends_on``, then the positional references are rewritten into the
    freshly assigned ids.  All references are validated before the first
    insert so an out-of-range index never leaves a partially linked set.

    Scheduling is dependency-gated: :meth:`get_next_sub_goal` only returns
    a pending sub-goal whose dependencies are all completed or skipped,
    choosing the lowest priority value (then lowest id) among those.
    """

    def __init__(
        self,
        store: GoalStore,
        router: ModelRouter,
        registry: ToolRegistry | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._router = router
        self._registry = registry
        self._bus = bus

    @property
    def store(self) -> GoalStore:
        return self._store

    # --- goals ---

    async def create_goal(
        self,
        description: str,
        source: GoalSource = GoalSource.OPERATOR,
        priority: int = 50,
    ) -> Goal:
        goal = self._store.insert_goal(description, source, priority)
        logger.info(
            "Created goal #%d (priority %d, %s)",
            goal.id,
            priority,
            source,
            extra={"goal": goal.id},
        )
        await publish_safely(
            self._bus, EventType.GOAL_UPDATE, goal_id=goal.id, status=goal.status
        )
        return goal

    def get_goal(self, goal_id: int) -> Goal:
        goal = self._store.get_goal(goal_id)
        if goal is None:
            raise GoalNotFoundError(f"goal {goal_id} not found")
        return goal

    def get_active_goals(self) -> list[Goal]:
        """Active goals, highest priority (lowest number) first."""
        return self._store.list_goals(status=GoalStatus.ACTIVE)

    async def update_goal_status(
        self,
        goal_id: int,
        status: GoalStatus,
        pause_reason: str | None = None,
    ) -> None:
        """Set a goal's status.  A completed goal never changes status."""
        goal = self.get_goal(goal_id)
        if goal.status == GoalStatus.COMPLETED and status != GoalStatus.COMPLETED:
            logger.warning(
                "Refusing to move completed goal #%d to %s",
                goal_id,
                status,
                extra={"goal": goal_id},
            )
            return
        self._store.update_goal(goal_id, status=status, pause_reason=pause_reason)
        await publish_safely(
            self._bus,
            EventType.GOAL_UPDATE,
            goal_id=goal_id,
            status=status,
            pause_reason=pause_reason,
        )

    def increment_replan_count(self, goal_id: int) -> int:
        """Bump the goal's replan counter and return the new value."""
        goal = self.get_goal(goal_id)
        new_count = goal.replan_count + 1
        self._store.update_goal(goal_id, replan_count=new_count)
        return new_count

    # --- decomposition ---

    async def decompose_goal(self, goal_id: int) -> list[SubGoal]:
        """Plan *goal_id* into sub-goals and persist them."""
        goal = self.get_goal(goal_id)
        available_tools = (
            [
                {"name": tool.name, "description": tool.description}
                for tool in self._registry.list()
            ]
            if self._registry is not None
            else []
        )
        descriptors = await plan_goal_decomposition(
            self._router, goal.description, available_tools, goal_id=goal_id
        )
        if not descriptors:
            raise DecompositionError(f"planner returned 0 sub-goals for goal {goal_id}")

        count = len(descriptors)
        for i, descriptor in enumerate(descriptors):
            for idx in descriptor.depends_on:
                if not 0 <= idx < count:
                    raise DecompositionError(
                        f"sub-goal[{i}].dependsOn index {idx} out of range "
                        f"({count} sub-goals)"
                    )

        # Phase 1: insert with empty dependencies to obtain ids.
        inserted = [
            self._store.insert_sub_goal(
                goal_id, descriptor.description, priority=descriptor.priority
            )
            for descriptor in descriptors
        ]

        # Phase 2: resolve positions into ids, then rewrite the rows.
        resolved = [
            [inserted[idx].id for idx in descriptor.depends_on]
            for descriptor in descriptors
        ]
        for i, dep_ids in enumerate(resolved):
            if dep_ids:
                inserted[i] = self._store.update_sub_goal(
                    inserted[i].id, depends_on=dep_ids
                )

        logger.info(
            "Goal #%d decomposed into %d sub-goals",
            goal_id,
            count,
            extra={"goal": goal_id},
        )
        return inserted

    # --- sub-goals ---

    def get_sub_goals(self, goal_id: int) -> list[SubGoal]:
        return self._store.list_sub_goals(goal_id)

    def get_next_sub_goal(self, goal_id: int) -> SubGoal | None:
        """Return the first actionable sub-goal, or *None* if none is."""
        sub_goals = self.get_sub_goals(goal_id)
        status_by_id = {sg.id: sg.status for sg in sub_goals}
        for sg in sub_goals:
            if sg.status != SubGoalStatus.PENDING:
                continue
            if all(status_by_id.get(dep) in SATISFIED_STATUSES for dep in sg.depends_on):
                return sg
        return None

    def is_goal_complete(self, goal_id: int) -> bool:
        """True iff every sub-goal is completed or skipped (vacuously true)."""
        return all(
            sg.status in SATISFIED_STATUSES for sg in self.get_sub_goals(goal_id)
        )

    async def update_sub_goal_status(
        self,
        sub_goal_id: int,
        status: SubGoalStatus,
        outcome: Any = _UNSET,
    ) -> None:
        fields: dict[str, Any] = {"status": status}
        if outcome is not _UNSET:
            fields["outcome"] = outcome
        if status in TERMINAL_STATUSES:
            fields["completed_at"] = datetime.now(UTC)
        sub_goal = self._store.update_sub_goal(sub_goal_id, **fields)
        await publish_safely(
            self._bus,
            EventType.SUB_GOAL_UPDATE,
            goal_id=sub_goal.goal_id,
            sub_goal_id=sub_goal_id,
            status=status,
        )
