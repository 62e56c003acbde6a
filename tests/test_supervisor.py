"""Tests for supervisor.py."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from events import EventBus, EventType
from goal_manager import GoalManager
from models import GoalStatus
from store import GoalStore
from supervisor import Supervisor
from tests.helpers import ConfigFactory

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FakeLoop:
    """Stands in for AgentLoop; runs until cancelled unless told otherwise."""

    def __init__(
        self, *, hold: bool = True, ignore_cancel: bool = False, error: Exception | None = None
    ) -> None:
        self.hold = hold
        self.ignore_cancel = ignore_cancel
        self.error = error
        self.cancelled = False
        self.goal_ids: list[int] = []
        self._release = asyncio.Event()

    async def run_goal_cycle(self, goal_id: int) -> None:
        self.goal_ids.append(goal_id)
        if self.error is not None:
            raise self.error
        if self.hold:
            await self._release.wait()

    def cancel(self) -> None:
        self.cancelled = True
        if not self.ignore_cancel:
            self._release.set()

    def finish(self) -> None:
        self._release.set()


class _Factory:
    def __init__(self, **loop_kwargs: object) -> None:
        self.loop_kwargs = loop_kwargs
        self.loops: list[_FakeLoop] = []

    def __call__(self) -> _FakeLoop:
        loop = _FakeLoop(**self.loop_kwargs)  # type: ignore[arg-type]
        self.loops.append(loop)
        return loop


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def _make_supervisor(
    tmp_path: Path,
    goal_manager: GoalManager,
    factory: _Factory,
    *,
    bus: EventBus | None = None,
    sleeps: list[float] | None = None,
    **config_overrides: object,
) -> Supervisor:
    config = ConfigFactory.create(state_file=tmp_path / "s.json", **config_overrides)  # type: ignore[arg-type]

    async def _sleep(seconds: float) -> None:
        if sleeps is not None:
            sleeps.append(seconds)

    return Supervisor(config, goal_manager, factory, bus, sleep_fn=_sleep)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# spawn / stop
# ---------------------------------------------------------------------------


class TestSpawn:
    @pytest.mark.asyncio
    async def test_spawn_runs_one_loop_per_goal(
        self, tmp_path: Path, goal_manager: GoalManager
    ) -> None:
        factory = _Factory()
        supervisor = _make_supervisor(tmp_path, goal_manager, factory)

        await supervisor.spawn_main_agent(1)
        await supervisor.spawn_main_agent(1)
        await _settle()

        assert len(factory.loops) == 1
        assert factory.loops[0].goal_ids == [1]
        assert supervisor.active_goal_ids() == [1]
        await supervisor.shutdown(timeout=1)

    @pytest.mark.asyncio
    async def test_concurrency_cap_defers_spawn(
        self, tmp_path: Path, goal_manager: GoalManager
    ) -> None:
        factory = _Factory()
        supervisor = _make_supervisor(
            tmp_path, goal_manager, factory, max_concurrent_goals=1
        )

        await supervisor.spawn_main_agent(1)
        await supervisor.spawn_main_agent(2)

        assert supervisor.active_agent_count == 1
        assert supervisor.active_goal_ids() == [1]
        assert len(factory.loops) == 1
        await supervisor.shutdown(timeout=1)

    @pytest.mark.asyncio
    async def test_finished_loop_leaves_map(
        self, tmp_path: Path, goal_manager: GoalManager
    ) -> None:
        factory = _Factory(hold=False)
        supervisor = _make_supervisor(tmp_path, goal_manager, factory)

        await supervisor.spawn_main_agent(1)
        await _settle()

        assert supervisor.active_agent_count == 0

    @pytest.mark.asyncio
    async def test_crashed_loop_leaves_map(
        self, tmp_path: Path, goal_manager: GoalManager
    ) -> None:
        factory = _Factory(error=RuntimeError("boom"))
        supervisor = _make_supervisor(tmp_path, goal_manager, factory)

        await supervisor.spawn_main_agent(1)
        await _settle()

        assert supervisor.active_agent_count == 0

    @pytest.mark.asyncio
    async def test_crash_publishes_error_event(
        self, tmp_path: Path, goal_manager: GoalManager
    ) -> None:
        bus = EventBus()
        factory = _Factory(error=RuntimeError("boom"))
        supervisor = _make_supervisor(tmp_path, goal_manager, factory, bus=bus)

        await supervisor.spawn_main_agent(4)
        await _settle()

        errors = [e for e in bus.get_history() if e.type == EventType.ERROR]
        assert len(errors) == 1
        assert errors[0].data == {"goal_id": 4, "source": "agent", "error": "boom"}

    @pytest.mark.asyncio
    async def test_stop_cancels_and_forgets_immediately(
        self, tmp_path: Path, goal_manager: GoalManager
    ) -> None:
        factory = _Factory()
        supervisor = _make_supervisor(tmp_path, goal_manager, factory)
        await supervisor.spawn_main_agent(1)

        await supervisor.stop_main_agent(1)

        assert factory.loops[0].cancelled is True
        assert supervisor.active_goal_ids() == []
        await supervisor.stop_main_agent(1)
        await supervisor.shutdown(timeout=1)

    @pytest.mark.asyncio
    async def test_respawn_is_not_evicted_by_old_loop(
        self, tmp_path: Path, goal_manager: GoalManager
    ) -> None:
        factory = _Factory()
        supervisor = _make_supervisor(tmp_path, goal_manager, factory)
        await supervisor.spawn_main_agent(1)
        await _settle()

        await supervisor.stop_main_agent(1)
        await supervisor.spawn_main_agent(1)
        await _settle()

        assert len(factory.loops) == 2
        assert supervisor.active_goal_ids() == [1]
        assert factory.loops[1].cancelled is False
        await supervisor.shutdown(timeout=1)

    @pytest.mark.asyncio
    async def test_status_events_published(
        self, tmp_path: Path, goal_manager: GoalManager
    ) -> None:
        bus = EventBus()
        supervisor = _make_supervisor(tmp_path, goal_manager, _Factory(), bus=bus)

        await supervisor.spawn_main_agent(3)
        await supervisor.stop_main_agent(3)

        statuses = [
            e.data["active_goal_ids"]
            for e in bus.get_history()
            if e.type == EventType.SUPERVISOR_STATUS
        ]
        assert statuses == [[3], []]
        await supervisor.shutdown(timeout=1)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class TestReconcile:
    @pytest.mark.asyncio
    async def test_start_spawns_active_goals_immediately(
        self, tmp_path: Path, goal_manager: GoalManager, store: GoalStore
    ) -> None:
        a = store.insert_goal("a", priority=10)
        b = store.insert_goal("b", priority=0)
        paused = store.insert_goal("paused")
        store.update_goal(paused.id, status=GoalStatus.PAUSED)
        supervisor = _make_supervisor(tmp_path, goal_manager, _Factory())

        await supervisor.start_supervisor_loop()

        assert sorted(supervisor.active_goal_ids()) == sorted([a.id, b.id])
        await supervisor.shutdown(timeout=1)

    @pytest.mark.asyncio
    async def test_tick_stops_goals_no_longer_active(
        self, tmp_path: Path, goal_manager: GoalManager, store: GoalStore
    ) -> None:
        goal = store.insert_goal("a")
        factory = _Factory()
        supervisor = _make_supervisor(
            tmp_path, goal_manager, factory, supervisor_interval=0.01
        )
        await supervisor.start_supervisor_loop()
        assert supervisor.active_goal_ids() == [goal.id]

        store.update_goal(goal.id, status=GoalStatus.PAUSED)
        await asyncio.sleep(0.1)

        assert supervisor.active_goal_ids() == []
        assert factory.loops[0].cancelled is True
        await supervisor.shutdown(timeout=1)

    @pytest.mark.asyncio
    async def test_tick_picks_up_new_goals(
        self, tmp_path: Path, goal_manager: GoalManager, store: GoalStore
    ) -> None:
        supervisor = _make_supervisor(
            tmp_path, goal_manager, _Factory(), supervisor_interval=0.01
        )
        await supervisor.start_supervisor_loop()
        assert supervisor.active_goal_ids() == []

        goal = store.insert_goal("late arrival")
        await asyncio.sleep(0.1)

        assert supervisor.active_goal_ids() == [goal.id]
        await supervisor.shutdown(timeout=1)

    @pytest.mark.asyncio
    async def test_start_is_idempotent(
        self, tmp_path: Path, goal_manager: GoalManager, store: GoalStore
    ) -> None:
        store.insert_goal("a")
        factory = _Factory()
        supervisor = _make_supervisor(tmp_path, goal_manager, factory)

        await supervisor.start_supervisor_loop()
        await supervisor.start_supervisor_loop()

        assert len(factory.loops) == 1
        await supervisor.shutdown(timeout=1)

    @pytest.mark.asyncio
    async def test_failed_tick_publishes_error_and_survives(
        self,
        tmp_path: Path,
        goal_manager: GoalManager,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def _unavailable() -> list[object]:
            raise OSError("store offline")

        monkeypatch.setattr(goal_manager, "get_active_goals", _unavailable)
        bus = EventBus()
        supervisor = _make_supervisor(tmp_path, goal_manager, _Factory(), bus=bus)

        await supervisor.start_supervisor_loop()

        errors = [e for e in bus.get_history() if e.type == EventType.ERROR]
        assert errors[0].data == {"source": "supervisor", "error": "store offline"}
        assert supervisor.active_agent_count == 0
        await supervisor.shutdown(timeout=1)

    @pytest.mark.asyncio
    async def test_stop_supervisor_leaves_agents_running(
        self, tmp_path: Path, goal_manager: GoalManager, store: GoalStore
    ) -> None:
        store.insert_goal("a")
        factory = _Factory()
        supervisor = _make_supervisor(tmp_path, goal_manager, factory)
        await supervisor.start_supervisor_loop()

        supervisor.stop_supervisor_loop()

        assert supervisor.active_agent_count == 1
        assert factory.loops[0].cancelled is False
        await supervisor.shutdown(timeout=1)


# ---------------------------------------------------------------------------
# Staggered restart / shutdown
# ---------------------------------------------------------------------------


class TestStaggeredRestart:
    @pytest.mark.asyncio
    async def test_sleeps_between_spawns_only(
        self, tmp_path: Path, goal_manager: GoalManager, store: GoalStore
    ) -> None:
        for name in ("a", "b", "c"):
            store.insert_goal(name)
        sleeps: list[float] = []
        supervisor = _make_supervisor(
            tmp_path, goal_manager, _Factory(), sleeps=sleeps, stagger_delay=2.0
        )

        await supervisor.staggered_restart()

        assert supervisor.active_agent_count == 3
        assert sleeps == [2.0, 2.0]
        await supervisor.shutdown(timeout=1)

    @pytest.mark.asyncio
    async def test_single_goal_no_sleep(
        self, tmp_path: Path, goal_manager: GoalManager, store: GoalStore
    ) -> None:
        store.insert_goal("a")
        sleeps: list[float] = []
        supervisor = _make_supervisor(tmp_path, goal_manager, _Factory(), sleeps=sleeps)

        await supervisor.staggered_restart()

        assert sleeps == []
        await supervisor.shutdown(timeout=1)


class TestShutdown:
    @pytest.mark.asyncio
    async def test_cancels_and_waits(
        self, tmp_path: Path, goal_manager: GoalManager
    ) -> None:
        factory = _Factory()
        supervisor = _make_supervisor(tmp_path, goal_manager, factory)
        await supervisor.spawn_main_agent(1)
        await supervisor.spawn_main_agent(2)

        await supervisor.shutdown(timeout=1)

        assert all(loop.cancelled for loop in factory.loops)
        assert supervisor.active_agent_count == 0

    @pytest.mark.asyncio
    async def test_stragglers_are_cancelled(
        self, tmp_path: Path, goal_manager: GoalManager
    ) -> None:
        factory = _Factory(ignore_cancel=True)
        supervisor = _make_supervisor(tmp_path, goal_manager, factory)
        await supervisor.spawn_main_agent(1)
        await _settle()

        await asyncio.wait_for(supervisor.shutdown(timeout=0.05), timeout=2)

        assert factory.loops[0].cancelled is True
        assert supervisor.active_agent_count == 0
