"""Re-decomposition of diverging goals, with escalation past a replan limit."""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel

from config import AutopilotConfig
from events import EventBus, EventType, publish_safely
from goal_manager import GoalManager
from models import GoalStatus, ReplanResult, SubGoal, SubGoalStatus, Tier
from notify import OperatorNotifier, notify_operator
from planner import DecompositionError
from reasoning import ModelRouter, ReasoningError

logger = logging.getLogger("autopilot.replanner")

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class _Usefulness(BaseModel):
    useful: bool
    reason: str | None = None


class Replanner:
    """Discards a goal's stale plan and asks for a fresh one.

    Performs the replan sequence:

    1. Increment the goal's replan counter (exactly once per call).
    2. Past ``replan_limit``: pause the goal, alert the operator, and stop.
    3. Skip in-progress sub-goals the cheap tier judges no longer useful.
    4. Skip every pending sub-goal.
    5. Decompose the goal again and alert the operator.
    """

    def __init__(
        self,
        config: AutopilotConfig,
        goal_manager: GoalManager,
        router: ModelRouter,
        notifier: OperatorNotifier | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._goals = goal_manager
        self._router = router
        self._notifier = notifier
        self._bus = bus

    async def replan(self, goal_id: int, reason: str) -> ReplanResult:
        """Replan *goal_id* because of *reason*."""
        count = self._goals.increment_replan_count(goal_id)

        if count > self._config.replan_limit:
            pause_reason = (
                f"Escalated after {count} replans (limit {self._config.replan_limit}): "
                f"{reason}"
            )
            await self._goals.update_goal_status(
                goal_id, GoalStatus.PAUSED, pause_reason
            )
            logger.warning(
                "Goal #%d escalated: %s", goal_id, pause_reason, extra={"goal": goal_id}
            )
            await notify_operator(
                self._notifier, f"Goal #{goal_id} paused for review: {pause_reason}"
            )
            await publish_safely(
                self._bus,
                EventType.ESCALATION,
                goal_id=goal_id,
                replan_count=count,
                reason=pause_reason,
            )
            return ReplanResult(escalated=True, reason=pause_reason)

        sub_goals = self._goals.get_sub_goals(goal_id)
        for sg in sub_goals:
            if sg.status == SubGoalStatus.IN_PROGRESS and not await self._still_useful(
                sg, reason
            ):
                await self._goals.update_sub_goal_status(sg.id, SubGoalStatus.SKIPPED)
        for sg in sub_goals:
            if sg.status == SubGoalStatus.PENDING:
                await self._goals.update_sub_goal_status(sg.id, SubGoalStatus.SKIPPED)

        try:
            new_sub_goals = await self._goals.decompose_goal(goal_id)
        except (DecompositionError, ReasoningError) as exc:
            logger.warning(
                "Re-decomposition of goal #%d failed: %s",
                goal_id,
                exc,
                extra={"goal": goal_id},
            )
            return ReplanResult(replanned=False, escalated=False, reason=str(exc))

        logger.info(
            "Goal #%d replanned (%d/%d) into %d sub-goals",
            goal_id,
            count,
            self._config.replan_limit,
            len(new_sub_goals),
            extra={"goal": goal_id},
        )
        await notify_operator(
            self._notifier,
            f"Goal #{goal_id} replanned ({count}/{self._config.replan_limit}): {reason}",
        )
        await publish_safely(
            self._bus,
            EventType.REPLAN,
            goal_id=goal_id,
            replan_count=count,
            sub_goals=len(new_sub_goals),
        )
        return ReplanResult(replanned=True, reason=reason)

    async def _still_useful(self, sub_goal: SubGoal, reason: str) -> bool:
        """Ask the cheap tier whether an interrupted sub-goal is worth keeping."""
        messages = [
            {
                "role": "system",
                "content": (
                    "A goal is being replanned because its execution diverged.\n\n"
                    f"REPLAN REASON:\n{reason}\n\n"
                    f"IN-PROGRESS SUB-GOAL:\n{sub_goal.description}\n\n"
                    "Is this sub-goal still useful under a new plan? Respond with "
                    'ONLY a JSON object: {"useful": true|false, "reason": "..."}'
                ),
            },
            {"role": "user", "content": "Classify the sub-goal now."},
        ]
        try:
            response = await self._router.complete(
                Tier.CHEAP,
                messages,
                goal_id=sub_goal.goal_id,
                response_format={"type": "json_object"},
            )
            verdict = _Usefulness.model_validate_json(
                _FENCE_RE.sub("", response.content.strip())
            )
        except Exception:
            logger.warning(
                "Usefulness check failed; keeping sub-goal #%d",
                sub_goal.id,
                exc_info=True,
                extra={"goal": sub_goal.goal_id, "sub_goal": sub_goal.id},
            )
            return True
        return verdict.useful
