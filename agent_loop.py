"""Tool-calling execution loop for sub-goals and goal cycles."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from config import AutopilotConfig
from cycle_log import log_cycle_complete, log_cycle_start
from evaluator import Evaluator
from events import EventBus, EventType, publish_safely
from goal_manager import GoalManager
from journal import Journal
from kill_switch import KillSwitchGuard
from models import (
    CycleStatus,
    EvaluationResult,
    ExecutionResult,
    FinishReason,
    GoalStatus,
    JournalEntry,
    SubGoal,
    SubGoalStatus,
    Tier,
    ToolCall,
)
from planner import DecompositionError
from reasoning import ModelRouter
from replanner import Replanner
from tools import ToolRegistry

logger = logging.getLogger("autopilot.agent_loop")

FALLBACK_OUTCOME = "Sub-goal completed without explicit output."
CANCELLED_OUTCOME = "cancelled"


class AgentLoop:
    """Drives one goal's sub-goals through the tool-calling protocol.

    Each sub-goal gets a fresh two-message conversation.  Every turn the
    assistant message is appended before any tool-result message, and tool
    calls run sequentially in the order requested.  Cancellation is
    cooperative: :meth:`cancel` sets a flag that is checked at the top of
    every turn and between sub-goals, never mid tool call.
    """

    def __init__(
        self,
        config: AutopilotConfig,
        router: ModelRouter,
        registry: ToolRegistry,
        kill_switch: KillSwitchGuard,
        goal_manager: GoalManager,
        journal: Journal,
        evaluator: Evaluator | None = None,
        replanner: Replanner | None = None,
        bus: EventBus | None = None,
        sleep_fn: Callable[[int | float], Coroutine[Any, Any, None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._router = router
        self._registry = registry
        self._kill_switch = kill_switch
        self._goals = goal_manager
        self._journal = journal
        self._evaluator = evaluator
        self._replanner = replanner
        self._bus = bus
        self._sleep_fn = sleep_fn
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Ask the loop to stop at its next check point."""
        self._cancelled = True

    # --- sub-goal execution ---

    def _build_messages(self, sub_goal: SubGoal) -> list[dict[str, Any]]:
        tool_lines = "\n".join(
            f"- {tool.name}: {tool.description}" for tool in self._registry.list()
        )
        system = "\n".join(
            [
                "You are an autonomous AI agent executing a specific sub-goal.",
                "",
                f"SUB-GOAL: {sub_goal.description}",
                "",
                "CONSTRAINTS:",
                "- Execute the sub-goal using the available tools.",
                "- Be efficient: only call tools that are necessary.",
                "- When the sub-goal is complete, respond with a final message "
                "summarizing what was accomplished.",
                "- Do not ask clarifying questions. Make reasonable decisions and proceed.",
                "",
                "AVAILABLE TOOLS:",
                tool_lines or "(none)",
            ]
        )
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": f"Execute this sub-goal: {sub_goal.description}"},
        ]

    async def _run_tool_call(self, call: ToolCall) -> dict[str, Any]:
        try:
            args = json.loads(call.arguments) if call.arguments else {}
            result = await self._registry.invoke(self._kill_switch, call.name, args)
            return result.model_dump()
        except Exception as exc:
            return {"success": False, "error": str(exc) or type(exc).__name__}

    async def _fail(self, sub_goal: SubGoal, outcome: dict[str, Any]) -> ExecutionResult:
        await self._goals.update_sub_goal_status(
            sub_goal.id, SubGoalStatus.FAILED, outcome
        )
        return ExecutionResult(success=False, outcome=outcome)

    async def execute_sub_goal(self, sub_goal: SubGoal) -> ExecutionResult:
        """Run *sub_goal* to a terminal status and return its result."""
        log_extra = {"goal": sub_goal.goal_id, "sub_goal": sub_goal.id}
        messages = self._build_messages(sub_goal)
        tools = self._registry.catalog()
        max_turns = self._config.max_turns_per_sub_goal

        await self._goals.update_sub_goal_status(sub_goal.id, SubGoalStatus.IN_PROGRESS)

        turns_used = 0
        while turns_used < max_turns:
            if self._cancelled:
                logger.info("Sub-goal cancelled mid-execution", extra=log_extra)
                return await self._fail(sub_goal, CANCELLED_OUTCOME)

            turns_used += 1
            response = await self._router.complete_with_tools(
                Tier.STRONG, messages, tools, goal_id=sub_goal.goal_id
            )
            message = response.message
            # The assistant turn must precede its tool results.
            messages.append(message.as_param())

            finish = response.finish_reason
            if finish == FinishReason.STOP:
                outcome = message.content or FALLBACK_OUTCOME
                await self._goals.update_sub_goal_status(
                    sub_goal.id, SubGoalStatus.COMPLETED, outcome
                )
                return ExecutionResult(success=True, outcome=outcome)

            if finish == FinishReason.TOOL_CALLS:
                for call in message.tool_calls:
                    result = await self._run_tool_call(call)
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": call.id,
                            "content": json.dumps(result, default=str),
                        }
                    )
                continue

            if finish == FinishReason.LENGTH:
                logger.warning(
                    "Context length exceeded after %d turns", turns_used, extra=log_extra
                )
                return await self._fail(
                    sub_goal,
                    {
                        "error": "context_length_exceeded",
                        "turns_used": turns_used,
                        "partial_content": message.content,
                    },
                )

            if finish == FinishReason.CONTENT_FILTER:
                logger.warning(
                    "Content filter triggered after %d turns", turns_used, extra=log_extra
                )
                return await self._fail(
                    sub_goal,
                    {"error": "content_filter_triggered", "turns_used": turns_used},
                )

            logger.warning("Unknown finish reason %r", finish, extra=log_extra)
            return await self._fail(
                sub_goal,
                {"error": f"unknown_finish_reason:{finish}", "turns_used": turns_used},
            )

        logger.warning("Exceeded max turns (%d)", max_turns, extra=log_extra)
        return await self._fail(
            sub_goal, {"error": "max_turns_exceeded", "max_turns": max_turns}
        )

    # --- goal cycle ---

    async def _ensure_decomposed(self, goal_id: int) -> bool:
        """Decompose a goal that has no sub-goals yet; False if that failed."""
        if self._goals.get_sub_goals(goal_id):
            return True
        try:
            await self._goals.decompose_goal(goal_id)
        except DecompositionError as exc:
            await self._goals.update_goal_status(
                goal_id, GoalStatus.PAUSED, f"Decomposition failed: {exc}"
            )
            logger.warning(
                "Goal #%d paused; decomposition failed: %s",
                goal_id,
                exc,
                extra={"goal": goal_id},
            )
            return False
        return True

    async def run_goal_cycle(self, goal_id: int) -> None:
        """Execute actionable sub-goals of *goal_id* until none remain.

        A goal without sub-goals is decomposed first.  Every executed
        sub-goal is checkpointed; a :class:`~journal.CheckpointError`
        propagates and halts the goal.
        """
        goal = self._goals.get_goal(goal_id)
        store = self._goals.store
        cycle_id = log_cycle_start(store, goal_id)
        await publish_safely(
            self._bus, EventType.CYCLE_START, goal_id=goal_id, cycle_id=cycle_id
        )

        evaluations: list[EvaluationResult] = []
        outcomes: list[Any] = []
        status = CycleStatus.FAILED
        try:
            if await self._ensure_decomposed(goal_id):
                await self._drive(goal_id, goal.description, evaluations, outcomes)
            status = CycleStatus.COMPLETED
        finally:
            log_cycle_complete(
                store,
                cycle_id,
                goal_id,
                status,
                {"goal_id": goal_id, "outcomes": outcomes},
            )
            await publish_safely(
                self._bus,
                EventType.CYCLE_COMPLETE,
                goal_id=goal_id,
                cycle_id=cycle_id,
                status=status,
            )

    async def _drive(
        self,
        goal_id: int,
        goal_description: str,
        evaluations: list[EvaluationResult],
        outcomes: list[Any],
    ) -> None:
        log_extra = {"goal": goal_id}
        while True:
            if self._cancelled:
                logger.info("Cycle cancelled", extra=log_extra)
                return

            sub_goal = self._goals.get_next_sub_goal(goal_id)
            if sub_goal is None:
                if self._goals.is_goal_complete(goal_id):
                    logger.info("Goal #%d complete", goal_id, extra=log_extra)
                    await self._goals.update_goal_status(goal_id, GoalStatus.COMPLETED)
                    self._journal.clear_journal(goal_id)
                else:
                    logger.info(
                        "Goal #%d has no actionable sub-goals but is not complete",
                        goal_id,
                        extra=log_extra,
                    )
                return

            logger.info(
                "Executing sub-goal #%d: %s",
                sub_goal.id,
                sub_goal.description,
                extra={"goal": goal_id, "sub_goal": sub_goal.id},
            )
            result = await self.execute_sub_goal(sub_goal)
            outcomes.append(result.outcome)

            await self._journal.checkpoint(
                goal_id,
                JournalEntry(
                    sub_goal_id=sub_goal.id,
                    goal_id=goal_id,
                    outcome=result.outcome,
                    status=SubGoalStatus.COMPLETED
                    if result.success
                    else SubGoalStatus.FAILED,
                ),
            )

            if self._cancelled:
                logger.info(
                    "Cycle cancelled after sub-goal #%d", sub_goal.id, extra=log_extra
                )
                return

            if self._evaluator is None:
                continue

            evaluation = await self._evaluator.evaluate_outcome(
                sub_goal, result.model_dump(), goal_description
            )
            evaluations.append(evaluation)
            if self._replanner is None or not self._evaluator.should_replan(evaluations):
                continue

            logger.info("Divergence detected; replanning", extra=log_extra)
            replan = await self._replanner.replan(
                goal_id, evaluation.reason or "divergence detected"
            )
            if replan.escalated:
                logger.warning("Goal #%d escalated to operator", goal_id, extra=log_extra)
                return
            if not replan.replanned:
                # Pending sub-goals are already skipped; the goal must not complete.
                await self._goals.update_goal_status(
                    goal_id, GoalStatus.PAUSED, f"Replan failed: {replan.reason}"
                )
                logger.warning(
                    "Goal #%d paused; replan failed: %s",
                    goal_id,
                    replan.reason,
                    extra=log_extra,
                )
                return
            evaluations.clear()

    # --- continuous loop ---

    async def run_continuous_loop(self) -> None:
        """Cycle through active goals by priority until cancelled."""
        logger.info("Starting continuous loop")
        while not self._cancelled:
            try:
                goals = self._goals.get_active_goals()
            except Exception:
                logger.exception("Failed to fetch active goals")
                goals = []

            for goal in goals:
                if self._cancelled:
                    break
                try:
                    await self.run_goal_cycle(goal.id)
                except Exception:
                    logger.exception(
                        "Cycle for goal #%d failed", goal.id, extra={"goal": goal.id}
                    )

            if self._cancelled:
                break
            await self._sleep_fn(self._config.cycle_sleep_interval)
        logger.info("Continuous loop stopped")
