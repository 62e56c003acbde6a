"""Shared test helpers for Autopilot tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from models import (
    AssistantMessage,
    Completion,
    FinishReason,
    ToolCall,
    ToolCompletion,
    Usage,
)


class FakeProvider:
    """Scripted reasoning provider.

    Each call pops the next scripted response (or raises it when it is an
    exception).  Every request is recorded so tests can inspect the exact
    messages that were sent.
    """

    def __init__(
        self,
        completions: list[Completion | Exception] | None = None,
        tool_completions: list[ToolCompletion | Exception] | None = None,
    ) -> None:
        self.completions: list[Completion | Exception] = list(completions or [])
        self.tool_completions: list[ToolCompletion | Exception] = list(
            tool_completions or []
        )
        self.complete_calls: list[dict[str, Any]] = []
        self.tool_calls: list[dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.complete_calls) + len(self.tool_calls)

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        *,
        response_format: dict[str, Any] | None = None,
    ) -> Completion:
        self.complete_calls.append(
            {
                "model": model,
                "messages": [dict(m) for m in messages],
                "response_format": response_format,
            }
        )
        if not self.completions:
            raise AssertionError("FakeProvider: no scripted completion left")
        item = self.completions.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def complete_with_tools(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ToolCompletion:
        # Snapshot: the loop keeps appending to the same list.
        self.tool_calls.append(
            {"model": model, "messages": [dict(m) for m in messages], "tools": tools}
        )
        if not self.tool_completions:
            raise AssertionError("FakeProvider: no scripted tool completion left")
        item = self.tool_completions.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def text(content: str, cost_usd: float = 0.0) -> Completion:
    """A plain completion with *content*."""
    return Completion(content=content, usage=Usage(cost_usd=cost_usd))


def decomposition(*items: dict[str, Any]) -> Completion:
    """A completion whose content is the JSON array *items*."""
    return text(json.dumps(list(items)))


def stop(content: str | None = "done", cost_usd: float = 0.0) -> ToolCompletion:
    return ToolCompletion(
        message=AssistantMessage(content=content),
        finish_reason=FinishReason.STOP.value,
        usage=Usage(cost_usd=cost_usd),
    )


def finish(reason: str, content: str | None = None) -> ToolCompletion:
    return ToolCompletion(message=AssistantMessage(content=content), finish_reason=reason)


def call_tools(*calls: tuple[str, str, dict[str, Any] | str]) -> ToolCompletion:
    """A ``tool_calls`` completion; each call is ``(id, name, args)``."""
    return ToolCompletion(
        message=AssistantMessage(
            content=None,
            tool_calls=[
                ToolCall(
                    id=call_id,
                    name=name,
                    arguments=args if isinstance(args, str) else json.dumps(args),
                )
                for call_id, name, args in calls
            ],
        ),
        finish_reason=FinishReason.TOOL_CALLS.value,
    )


class ConfigFactory:
    """Factory for AutopilotConfig instances."""

    @staticmethod
    def create(
        *,
        state_file: Path | None = None,
        max_turns_per_sub_goal: int = 5,
        cycle_sleep_interval: float = 0,
        tool_timeout: float = 5,
        max_concurrent_goals: int = 5,
        supervisor_interval: float = 10,
        stagger_delay: float = 0,
        replan_limit: int = 5,
        cost_threshold_usd: float = 5.0,
        cost_window_hours: float = 24,
        checkpoint_retry_delay: float = 0,
        kill_switch_cache_ttl: float = 0,
        notify_webhook_url: str = "",
        openrouter_api_key: str = "test-key",
        config_file: Path | None = None,
    ):
        """Create an AutopilotConfig with test-friendly defaults."""
        from config import AutopilotConfig

        return AutopilotConfig(
            state_file=state_file or Path("/tmp/autopilot-test/state.json"),
            max_turns_per_sub_goal=max_turns_per_sub_goal,
            cycle_sleep_interval=cycle_sleep_interval,
            tool_timeout=tool_timeout,
            max_concurrent_goals=max_concurrent_goals,
            supervisor_interval=supervisor_interval,
            stagger_delay=stagger_delay,
            replan_limit=replan_limit,
            cost_threshold_usd=cost_threshold_usd,
            cost_window_hours=cost_window_hours,
            checkpoint_retry_delay=checkpoint_retry_delay,
            kill_switch_cache_ttl=kill_switch_cache_ttl,
            notify_webhook_url=notify_webhook_url,
            openrouter_api_key=openrouter_api_key,
            config_file=config_file,
        )
