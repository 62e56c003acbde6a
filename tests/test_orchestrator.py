"""Tests for orchestrator.py."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest

from config import AutopilotConfig
from events import EventBus, EventType
from models import GoalStatus, RecoveryResult, SubGoalStatus
from orchestrator import AutopilotOrchestrator
from store import GoalStore
from supervisor import Supervisor
from tests.helpers import FakeProvider, stop, text
from tools import ToolRegistry

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_orchestrator(
    config: AutopilotConfig, store: GoalStore, provider: FakeProvider
) -> tuple[AutopilotOrchestrator, AsyncMock, EventBus]:
    notifier = AsyncMock()
    bus = EventBus()
    orch = AutopilotOrchestrator(
        config,
        store=store,
        provider=provider,
        registry=ToolRegistry(store),
        notifier=notifier,
        event_bus=bus,
    )
    return orch, notifier, bus


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_exposes_components(
        self, config: AutopilotConfig, store: GoalStore, provider: FakeProvider
    ) -> None:
        orch, _, bus = _make_orchestrator(config, store, provider)

        assert orch.store is store
        assert orch.event_bus is bus
        assert isinstance(orch.supervisor, Supervisor)
        assert orch.goal_manager.store is store
        assert orch.running is False

    def test_defaults_build_own_store(self, config: AutopilotConfig) -> None:
        orch = AutopilotOrchestrator(config)
        assert orch.store.path == config.state_file
        assert orch.registry.count() == 0


# ---------------------------------------------------------------------------
# recover / run / stop
# ---------------------------------------------------------------------------


class TestRun:
    @pytest.mark.asyncio
    async def test_recover_clean_start(
        self, config: AutopilotConfig, store: GoalStore, provider: FakeProvider
    ) -> None:
        orch, notifier, _ = _make_orchestrator(config, store, provider)

        assert await orch.recover() == RecoveryResult()
        notifier.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_recovers_and_executes_until_stopped(
        self, config: AutopilotConfig, store: GoalStore, provider: FakeProvider
    ) -> None:
        goal = store.insert_goal("Tidy the changelog")
        sg = store.insert_sub_goal(goal.id, "Dedupe entries")
        store.update_sub_goal(sg.id, status=SubGoalStatus.IN_PROGRESS)
        provider.tool_completions.append(stop("deduped"))
        provider.completions.append(text(json.dumps({"divergent": False})))
        orch, notifier, bus = _make_orchestrator(config, store, provider)

        task = asyncio.create_task(orch.run())
        await _wait_for(lambda: store.get_goal(goal.id).status == GoalStatus.COMPLETED)
        assert orch.running is True

        await orch.stop()
        await asyncio.wait_for(task, timeout=2)

        assert orch.running is False
        assert store.get_sub_goal(sg.id).outcome == "deduped"
        notifier.send.assert_awaited_once_with(
            "Crash recovery: restarting 1 active goals."
        )
        types = [e.type for e in bus.get_history()]
        assert EventType.RECOVERY in types
        assert EventType.CYCLE_COMPLETE in types
        last = bus.get_history()[-1]
        assert last.type == EventType.SUPERVISOR_STATUS
        assert last.data == {"status": "stopped"}

    @pytest.mark.asyncio
    async def test_stop_before_any_goal(
        self, config: AutopilotConfig, store: GoalStore, provider: FakeProvider
    ) -> None:
        orch, _, _ = _make_orchestrator(config, store, provider)

        task = asyncio.create_task(orch.run())
        await _wait_for(lambda: orch.running)
        await orch.stop()
        await asyncio.wait_for(task, timeout=2)

        assert orch.supervisor.active_agent_count == 0
        assert provider.call_count == 0

    @pytest.mark.asyncio
    async def test_bus_events_are_written_to_the_debug_trail(
        self,
        config: AutopilotConfig,
        store: GoalStore,
        provider: FakeProvider,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        caplog.set_level(logging.DEBUG, logger="autopilot.events.trail")
        orch, _, _ = _make_orchestrator(config, store, provider)

        task = asyncio.create_task(orch.run())
        await _wait_for(lambda: orch.running)
        await orch.stop()
        await asyncio.wait_for(task, timeout=2)

        trail = [
            r.getMessage() for r in caplog.records if r.name == "autopilot.events.trail"
        ]
        assert trail == [
            'supervisor_status {"status": "running"}',
            'supervisor_status {"status": "stopped"}',
        ]
