"""Pytest configuration and shared fixtures for Autopilot tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from config import AutopilotConfig
from goal_manager import GoalManager
from journal import Journal
from kill_switch import KillSwitchGuard
from reasoning import ModelRouter
from store import GoalStore
from tests.helpers import ConfigFactory, FakeProvider
from tools import ToolRegistry

_ENV_VARS = (
    "AUTOPILOT_STATE_FILE",
    "AUTOPILOT_MODEL_STRONG",
    "AUTOPILOT_MODEL_MID",
    "AUTOPILOT_MODEL_CHEAP",
    "AUTOPILOT_OPENROUTER_API_KEY",
    "OPENROUTER_API_KEY",
    "AUTOPILOT_NOTIFY_WEBHOOK_URL",
    "AUTOPILOT_MAX_CONCURRENT_GOALS",
    "AUTOPILOT_REPLAN_LIMIT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's environment out of config resolution."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def config(tmp_path: Path) -> AutopilotConfig:
    return ConfigFactory.create(state_file=tmp_path / "state.json")


@pytest.fixture
def store(config: AutopilotConfig) -> GoalStore:
    return GoalStore(config.state_file)


@pytest.fixture
def kill_switch(store: GoalStore) -> KillSwitchGuard:
    return KillSwitchGuard(store, ttl=0)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def router(
    config: AutopilotConfig,
    provider: FakeProvider,
    store: GoalStore,
    kill_switch: KillSwitchGuard,
) -> ModelRouter:
    return ModelRouter(provider, config.tier_models(), store, kill_switch)


@pytest.fixture
def registry(store: GoalStore) -> ToolRegistry:
    return ToolRegistry(store, default_timeout=5)


@pytest.fixture
def goal_manager(
    store: GoalStore, router: ModelRouter, registry: ToolRegistry
) -> GoalManager:
    return GoalManager(store, router, registry)


@pytest.fixture
def journal(store: GoalStore) -> Journal:
    async def _no_sleep(_seconds: float) -> None:
        return None

    return Journal(store, retry_delay=0, sleep_fn=_no_sleep)
