"""Supervisor: one execution loop per active goal, reconciled on a timer."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from agent_loop import AgentLoop
from config import AutopilotConfig
from events import EventBus, EventType, publish_safely
from goal_manager import GoalManager

logger = logging.getLogger("autopilot.supervisor")


@dataclass
class _RunningAgent:
    loop: AgentLoop
    task: asyncio.Task[None] | None = field(default=None, repr=False)


class Supervisor:
    """Keeps the in-memory set of running goal loops in line with the store.

    The running map is ephemeral: after a restart it is rebuilt from the
    durable set of active goals, never from a persisted "running" flag.
    At most one loop runs per goal id and never more than
    ``max_concurrent_goals`` at once.  Stopping a loop is an eventual
    signal; the loop exits at its next cancellation check.
    """

    def __init__(
        self,
        config: AutopilotConfig,
        goal_manager: GoalManager,
        loop_factory: Callable[[], AgentLoop],
        bus: EventBus | None = None,
        sleep_fn: Callable[[int | float], Coroutine[Any, Any, None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._goals = goal_manager
        self._loop_factory = loop_factory
        self._bus = bus
        self._sleep_fn = sleep_fn
        self._agents: dict[int, _RunningAgent] = {}
        # Every task still running, including ones already removed from the map.
        self._tasks: set[asyncio.Task[None]] = set()
        self._stop_event = asyncio.Event()
        self._reconcile_task: asyncio.Task[None] | None = None

    @property
    def active_agent_count(self) -> int:
        return len(self._agents)

    def active_goal_ids(self) -> list[int]:
        return list(self._agents)

    # --- agent lifecycle ---

    async def spawn_main_agent(self, goal_id: int) -> None:
        """Start a loop for *goal_id* unless one runs or the cap is reached."""
        if goal_id in self._agents:
            logger.debug("Agent for goal #%d already running", goal_id)
            return
        if len(self._agents) >= self._config.max_concurrent_goals:
            logger.info(
                "Concurrency cap (%d) reached; goal #%d deferred to next tick",
                self._config.max_concurrent_goals,
                goal_id,
                extra={"goal": goal_id},
            )
            return

        handle = _RunningAgent(loop=self._loop_factory())
        self._agents[goal_id] = handle
        handle.task = asyncio.create_task(self._run_agent(goal_id, handle))
        self._tasks.add(handle.task)
        handle.task.add_done_callback(self._tasks.discard)
        logger.info("Spawned agent for goal #%d", goal_id, extra={"goal": goal_id})
        await self._publish_status()

    async def _run_agent(self, goal_id: int, handle: _RunningAgent) -> None:
        try:
            await handle.loop.run_goal_cycle(goal_id)
            logger.info("Agent for goal #%d finished", goal_id, extra={"goal": goal_id})
        except Exception as exc:
            logger.exception("Agent for goal #%d crashed", goal_id, extra={"goal": goal_id})
            await publish_safely(
                self._bus,
                EventType.ERROR,
                goal_id=goal_id,
                source="agent",
                error=str(exc) or type(exc).__name__,
            )
        finally:
            # A stopped-then-respawned goal owns a newer entry; leave it alone.
            if self._agents.get(goal_id) is handle:
                del self._agents[goal_id]

    async def stop_main_agent(self, goal_id: int) -> None:
        """Signal the loop for *goal_id* to stop and forget it immediately."""
        handle = self._agents.pop(goal_id, None)
        if handle is None:
            logger.debug("No agent running for goal #%d", goal_id)
            return
        handle.loop.cancel()
        logger.info("Stopping agent for goal #%d", goal_id, extra={"goal": goal_id})
        await self._publish_status()

    # --- reconciliation ---

    async def _tick(self) -> None:
        try:
            active = self._goals.get_active_goals()
            active_ids = {g.id for g in active}
            for goal in active:
                if goal.id not in self._agents:
                    await self.spawn_main_agent(goal.id)
            for goal_id in list(self._agents):
                if goal_id not in active_ids:
                    await self.stop_main_agent(goal_id)
        except Exception as exc:
            logger.exception("Supervisor tick failed; will retry next interval")
            await publish_safely(
                self._bus, EventType.ERROR, source="supervisor", error=str(exc)
            )

    async def _reconcile_loop(self) -> None:
        while not self._stop_event.is_set():
            await self._sleep_or_stop(self._config.supervisor_interval)
            if self._stop_event.is_set():
                break
            await self._tick()

    async def _sleep_or_stop(self, seconds: float) -> None:
        """Sleep for *seconds*, waking early if stop is requested."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    async def start_supervisor_loop(self) -> None:
        """Reconcile once now, then every ``supervisor_interval`` seconds."""
        if self._reconcile_task is not None and not self._reconcile_task.done():
            return
        logger.info("Starting supervisor loop")
        self._stop_event.clear()
        await self._tick()
        self._reconcile_task = asyncio.create_task(self._reconcile_loop())

    def stop_supervisor_loop(self) -> None:
        """Stop reconciliation.  Running agents are left alone."""
        self._stop_event.set()
        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            self._reconcile_task = None
            logger.info("Supervisor loop stopped")

    async def staggered_restart(self) -> None:
        """Spawn every active goal, pausing ``stagger_delay`` between spawns."""
        active = self._goals.get_active_goals()
        logger.info("Staggered restart of %d goals", len(active))
        for i, goal in enumerate(active):
            await self.spawn_main_agent(goal.id)
            if i < len(active) - 1:
                await self._sleep_fn(self._config.stagger_delay)

    async def shutdown(self, timeout: float = 30) -> None:
        """Stop reconciliation and every agent, waiting up to *timeout* seconds."""
        self.stop_supervisor_loop()
        for goal_id in list(self._agents):
            await self.stop_main_agent(goal_id)
        pending = list(self._tasks)
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d agents that did not stop in time", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _publish_status(self) -> None:
        await publish_safely(
            self._bus,
            EventType.SUPERVISOR_STATUS,
            active_goal_ids=self.active_goal_ids(),
        )
