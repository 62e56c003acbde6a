"""Startup recovery after a crash or restart with work in flight."""

from __future__ import annotations

import logging

from cycle_log import find_unfinished_cycles, log_cycle_interrupted
from events import EventBus, EventType, publish_safely
from journal import Journal
from models import GoalStatus, RecoveryResult, SubGoalStatus
from notify import OperatorNotifier, notify_operator
from store import GoalStore
from supervisor import Supervisor

logger = logging.getLogger("autopilot.recovery")


class StartupRecovery:
    """Reconciles durable state before any goal loop is spawned.

    Recovery must run strictly before the supervisor starts reconciling,
    since it mutates sub-goals that no loop owns yet.
    """

    def __init__(
        self,
        store: GoalStore,
        journal: Journal,
        supervisor: Supervisor,
        notifier: OperatorNotifier | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._journal = journal
        self._supervisor = supervisor
        self._notifier = notifier
        self._bus = bus

    def detect_crash_recovery(self) -> bool:
        """True iff any goal is active at startup."""
        return bool(self._store.list_goals(status=GoalStatus.ACTIVE))

    async def perform_startup_recovery(self) -> RecoveryResult:
        """Close interrupted cycles, reset orphaned sub-goals, restart goals."""
        active_goals = self._store.list_goals(status=GoalStatus.ACTIVE)
        unfinished = find_unfinished_cycles(self._store)
        if not active_goals and not unfinished:
            logger.info("Clean start; no recovery needed")
            return RecoveryResult()

        logger.warning(
            "Crash recovery: %d active goals, %d unfinished cycles",
            len(active_goals),
            len(unfinished),
        )
        await notify_operator(
            self._notifier,
            f"Crash recovery: restarting {len(active_goals)} active goals.",
        )

        for cycle in unfinished:
            try:
                log_cycle_interrupted(self._store, cycle)
                logger.info("Cycle %d marked interrupted", cycle.id, extra={"cycle": cycle.id})
            except Exception:
                logger.warning(
                    "Failed to mark cycle %d interrupted",
                    cycle.id,
                    exc_info=True,
                    extra={"cycle": cycle.id},
                )

        escalated = 0
        for goal in active_goals:
            try:
                completed_ids = self._journal.get_completed_sub_goal_ids(goal.id)
                for sg in self._store.list_sub_goals(goal.id):
                    # Journal-completed rows are left as found.
                    if sg.status == SubGoalStatus.IN_PROGRESS and sg.id not in completed_ids:
                        self._store.update_sub_goal(sg.id, status=SubGoalStatus.PENDING)
                        logger.info(
                            "Sub-goal #%d reset to pending",
                            sg.id,
                            extra={"goal": goal.id, "sub_goal": sg.id},
                        )
            except Exception:
                logger.exception(
                    "Failed to reset sub-goals for goal #%d",
                    goal.id,
                    extra={"goal": goal.id},
                )
                escalated += 1

        try:
            await self._supervisor.staggered_restart()
        except Exception:
            logger.exception("Staggered restart failed")
            escalated += 1

        result = RecoveryResult(
            recovered=max(0, len(active_goals) - escalated), escalated=escalated
        )
        logger.info(
            "Recovery complete: %d resumed, %d escalated",
            result.recovered,
            result.escalated,
        )
        await publish_safely(
            self._bus,
            EventType.RECOVERY,
            recovered=result.recovered,
            escalated=result.escalated,
        )
        return result
