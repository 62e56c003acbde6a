"""Durable goal store for Autopilot."""

from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from models import (
    AiCallRecord,
    CycleStatus,
    Goal,
    GoalSource,
    KillSwitchAudit,
    PlanningCycle,
    StoreData,
    SubGoal,
    ToolCallRecord,
)

logger = logging.getLogger("autopilot.store")


class GoalStore:
    """JSON-file backed store for goals, sub-goals, and the audit logs.

    Writes ``<cwd>/.autopilot/state.json`` after every mutation.  Every
    read hands back a copy, so callers never mutate stored rows in place.
    """

    def __init__(self, state_file: Path) -> None:
        self._path = state_file
        self._data: StoreData = StoreData()
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    # --- persistence ---

    def load(self) -> dict[str, Any]:
        """Load state from disk, or initialise defaults."""
        if self._path.exists():
            try:
                loaded = json.loads(self._path.read_text())
                if not isinstance(loaded, dict):
                    raise ValueError("State file must contain a JSON object")
                self._data = StoreData.model_validate(loaded)
                logger.info("State loaded from %s", self._path)
            except (json.JSONDecodeError, OSError, ValueError) as exc:
                logger.warning("Corrupt state file, resetting: %s", exc)
                self._data = StoreData()
        return self._data.model_dump()

    def save(self) -> None:
        """Flush current state to disk atomically."""
        self._data.last_updated = datetime.now(UTC).isoformat()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = self._data.model_dump_json(indent=2)
        # os.replace() is atomic on POSIX: readers see the old file or the new one.
        fd, tmp = tempfile.mkstemp(
            dir=self._path.parent,
            prefix=".state-",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            raise

    def _next_id(self, sequence: str) -> int:
        value = self._data.sequences.get(sequence, 0) + 1
        self._data.sequences[sequence] = value
        return value

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[None]:
        """Persist the mutations made in the block, or restore the prior state.

        If the block or the save raises, the in-memory state is rolled back
        so no unpersisted change leaks into a later write.
        """
        snapshot = self._data.model_copy(deep=True)
        try:
            yield
            self.save()
        except BaseException:
            self._data = snapshot
            raise

    # --- goals ---

    def insert_goal(
        self,
        description: str,
        source: GoalSource = GoalSource.OPERATOR,
        priority: int = 50,
    ) -> Goal:
        with self._transaction():
            goal = Goal(
                id=self._next_id("goals"),
                description=description,
                source=source,
                priority=priority,
            )
            self._data.goals[str(goal.id)] = goal
        return goal.model_copy(deep=True)

    def get_goal(self, goal_id: int) -> Goal | None:
        goal = self._data.goals.get(str(goal_id))
        return goal.model_copy(deep=True) if goal else None

    def list_goals(self, status: str | None = None) -> list[Goal]:
        """Return goals ordered by priority (0 first), then id."""
        goals = [
            g for g in self._data.goals.values() if status is None or g.status == status
        ]
        goals.sort(key=lambda g: (g.priority, g.id))
        return [g.model_copy(deep=True) for g in goals]

    def update_goal(self, goal_id: int, **fields: Any) -> Goal:
        """Apply *fields* to the goal row; raises ``KeyError`` if absent."""
        current = self._data.goals.get(str(goal_id))
        if current is None:
            raise KeyError(f"goal {goal_id} not found")
        fields.setdefault("updated_at", datetime.now(UTC))
        updated = Goal.model_validate({**current.model_dump(), **fields})
        with self._transaction():
            self._data.goals[str(goal_id)] = updated
        return updated.model_copy(deep=True)

    # --- sub-goals ---

    def insert_sub_goal(
        self,
        goal_id: int,
        description: str,
        priority: int = 50,
        depends_on: list[int] | None = None,
    ) -> SubGoal:
        with self._transaction():
            sub_goal = SubGoal(
                id=self._next_id("sub_goals"),
                goal_id=goal_id,
                description=description,
                priority=priority,
                depends_on=list(depends_on or []),
            )
            self._data.sub_goals[str(sub_goal.id)] = sub_goal
        return sub_goal.model_copy(deep=True)

    def get_sub_goal(self, sub_goal_id: int) -> SubGoal | None:
        sub_goal = self._data.sub_goals.get(str(sub_goal_id))
        return sub_goal.model_copy(deep=True) if sub_goal else None

    def list_sub_goals(self, goal_id: int) -> list[SubGoal]:
        """Return a goal's sub-goals ordered by priority, then id."""
        rows = [s for s in self._data.sub_goals.values() if s.goal_id == goal_id]
        rows.sort(key=lambda s: (s.priority, s.id))
        return [s.model_copy(deep=True) for s in rows]

    def update_sub_goal(self, sub_goal_id: int, **fields: Any) -> SubGoal:
        """Apply *fields* to the sub-goal row; raises ``KeyError`` if absent."""
        current = self._data.sub_goals.get(str(sub_goal_id))
        if current is None:
            raise KeyError(f"sub-goal {sub_goal_id} not found")
        updated = SubGoal.model_validate({**current.model_dump(), **fields})
        with self._transaction():
            self._data.sub_goals[str(sub_goal_id)] = updated
        return updated.model_copy(deep=True)

    # --- key/value agent state ---

    def get_state(self, key: str) -> Any:
        """Return a copy of the value stored under *key*, or *None*."""
        return copy.deepcopy(self._data.agent_state.get(key))

    def set_state(self, key: str, value: Any) -> None:
        with self._transaction():
            self._data.agent_state[key] = copy.deepcopy(value)

    def delete_state(self, key: str) -> None:
        if key not in self._data.agent_state:
            return
        with self._transaction():
            del self._data.agent_state[key]

    # --- planning cycles ---

    def insert_cycle(
        self,
        goals: dict[str, Any],
        status: CycleStatus = CycleStatus.ACTIVE,
        *,
        parent_id: int | None = None,
        outcomes: dict[str, Any] | None = None,
        completed_at: datetime | None = None,
    ) -> PlanningCycle:
        with self._transaction():
            cycle = PlanningCycle(
                id=self._next_id("planning_cycles"),
                parent_id=parent_id,
                goals=goals,
                status=status,
                outcomes=outcomes,
                completed_at=completed_at,
            )
            self._data.planning_cycles.append(cycle)
        return cycle.model_copy(deep=True)

    def list_cycles(self) -> list[PlanningCycle]:
        return [c.model_copy(deep=True) for c in self._data.planning_cycles]

    # --- tool calls ---

    def insert_tool_call(
        self,
        tool_name: str,
        status: str,
        *,
        parent_id: int | None = None,
        input: Any = None,  # noqa: A002
        output: Any = None,
        error: str | None = None,
        duration_ms: int | None = None,
    ) -> ToolCallRecord:
        with self._transaction():
            record = ToolCallRecord(
                id=self._next_id("tool_calls"),
                parent_id=parent_id,
                tool_name=tool_name,
                status=status,
                input=input,
                output=output,
                error=error,
                duration_ms=duration_ms,
                completed_at=datetime.now(UTC) if parent_id is not None else None,
            )
            self._data.tool_calls.append(record)
        return record.model_copy(deep=True)

    def list_tool_calls(self) -> list[ToolCallRecord]:
        return [r.model_copy(deep=True) for r in self._data.tool_calls]

    # --- AI calls ---

    def insert_ai_call(self, record: AiCallRecord) -> None:
        with self._transaction():
            self._data.ai_calls.append(record.model_copy(deep=True))

    def list_ai_calls(self) -> list[AiCallRecord]:
        return [r.model_copy(deep=True) for r in self._data.ai_calls]

    def goal_spend_since(self, goal_id: int, since: datetime) -> float:
        """Return the USD spend attributed to *goal_id* at or after *since*."""
        return sum(
            r.cost_usd
            for r in self._data.ai_calls
            if r.goal_id == goal_id and r.created_at >= since
        )

    # --- kill-switch audit ---

    def insert_kill_switch_audit(
        self, action: str, reason: str, triggered_by: str = "cli"
    ) -> KillSwitchAudit:
        row = KillSwitchAudit(action=action, reason=reason, triggered_by=triggered_by)
        with self._transaction():
            self._data.kill_switch_audit.append(row)
        return row.model_copy(deep=True)

    def list_kill_switch_audit(self) -> list[KillSwitchAudit]:
        return [r.model_copy(deep=True) for r in self._data.kill_switch_audit]
