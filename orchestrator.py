"""Runtime wiring: recover, supervise, repeat until stopped."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging

from agent_loop import AgentLoop
from config import AutopilotConfig
from evaluator import Evaluator
from events import AutopilotEvent, EventBus, EventType, publish_safely
from goal_manager import GoalManager
from journal import Journal
from kill_switch import KillSwitchGuard
from models import RecoveryResult
from notify import OperatorNotifier, build_notifier
from reasoning import AiProvider, ModelRouter, OpenRouterProvider
from recovery import StartupRecovery
from replanner import Replanner
from store import GoalStore
from supervisor import Supervisor
from tools import ToolRegistry

logger = logging.getLogger("autopilot.orchestrator")
event_logger = logging.getLogger("autopilot.events.trail")


class AutopilotOrchestrator:
    """Builds every component and runs the supervisor until stopped.

    Startup recovery always completes before the supervisor's first
    reconciliation tick so no loop observes half-recovered state.
    """

    def __init__(
        self,
        config: AutopilotConfig,
        *,
        store: GoalStore | None = None,
        provider: AiProvider | None = None,
        registry: ToolRegistry | None = None,
        notifier: OperatorNotifier | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._bus = event_bus or EventBus()
        self._store = store or GoalStore(config.state_file)
        self._kill_switch = KillSwitchGuard(self._store, config.kill_switch_cache_ttl)
        self._router = ModelRouter(
            provider
            or OpenRouterProvider(
                config.openrouter_api_key,
                config.openrouter_base_url,
                timeout=config.request_timeout,
            ),
            config.tier_models(),
            self._store,
            self._kill_switch,
        )
        self._registry = registry or ToolRegistry(self._store, config.tool_timeout)
        self._notifier = notifier or build_notifier(config.notify_webhook_url)
        self._goals = GoalManager(self._store, self._router, self._registry, self._bus)
        self._journal = Journal(self._store, config.checkpoint_retry_delay)
        self._evaluator = Evaluator(config, self._router)
        self._replanner = Replanner(
            config, self._goals, self._router, self._notifier, self._bus
        )
        self._supervisor = Supervisor(
            config, self._goals, self._build_loop, self._bus
        )
        self._recovery = StartupRecovery(
            self._store, self._journal, self._supervisor, self._notifier, self._bus
        )
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def store(self) -> GoalStore:
        return self._store

    @property
    def goal_manager(self) -> GoalManager:
        return self._goals

    @property
    def supervisor(self) -> Supervisor:
        return self._supervisor

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def running(self) -> bool:
        return self._running

    def _build_loop(self) -> AgentLoop:
        return AgentLoop(
            self._config,
            self._router,
            self._registry,
            self._kill_switch,
            self._goals,
            self._journal,
            evaluator=self._evaluator,
            replanner=self._replanner,
            bus=self._bus,
        )

    async def recover(self) -> RecoveryResult:
        """Run startup recovery; a clean start returns zero counts."""
        if self._recovery.detect_crash_recovery():
            logger.warning("Active goals found at startup; running recovery")
        return await self._recovery.perform_startup_recovery()

    async def run(self) -> None:
        """Recover, then supervise goal loops until :meth:`stop` is called."""
        self._stop_event.clear()
        self._running = True
        logger.info(
            "Autopilot starting: state=%s max_goals=%d interval=%ss",
            self._config.state_file,
            self._config.max_concurrent_goals,
            self._config.supervisor_interval,
        )
        async with self._bus.subscription() as events:
            relay = asyncio.create_task(_relay_events(events))
            try:
                await self.recover()
                await self._supervisor.start_supervisor_loop()
                await publish_safely(
                    self._bus, EventType.SUPERVISOR_STATUS, status="running"
                )
                await self._stop_event.wait()
            finally:
                await self._supervisor.shutdown()
                self._running = False
                await publish_safely(
                    self._bus, EventType.SUPERVISOR_STATUS, status="stopped"
                )
                relay.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await relay
                while not events.empty():
                    _log_event(events.get_nowait())
                logger.info("Autopilot stopped")

    async def stop(self) -> None:
        """Signal :meth:`run` to shut the supervisor down and return."""
        logger.info("Stop requested")
        self._stop_event.set()


async def _relay_events(events: asyncio.Queue[AutopilotEvent]) -> None:
    while True:
        _log_event(await events.get())


def _log_event(event: AutopilotEvent) -> None:
    """Write one bus event to the debug trail."""
    goal_id = event.data.get("goal_id")
    event_logger.debug(
        "%s %s",
        event.type,
        json.dumps(event.data, default=str),
        extra={"goal": goal_id} if goal_id is not None else None,
    )
