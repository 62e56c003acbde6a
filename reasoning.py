"""Reasoning service client and tier router."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx

from kill_switch import KillSwitchGuard
from models import (
    AiCallRecord,
    AssistantMessage,
    Completion,
    FinishReason,
    Tier,
    ToolCall,
    ToolCompletion,
    Usage,
)
from store import GoalStore

logger = logging.getLogger("autopilot.reasoning")


class ReasoningError(RuntimeError):
    """Raised when the reasoning service cannot produce a completion."""


class AiProvider(Protocol):
    """Anything that can turn chat messages into completions."""

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        *,
        response_format: dict[str, Any] | None = None,
    ) -> Completion: ...

    async def complete_with_tools(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ToolCompletion: ...


class OpenRouterProvider:
    """OpenAI-compatible ``/chat/completions`` client for OpenRouter.

    Pass *client* to share a connection pool (or a mock transport in
    tests); otherwise a short-lived client is opened per request.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        *,
        timeout: float = 120,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            logger.warning("OpenRouter API key not set; requests will fail auth")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        *,
        response_format: dict[str, Any] | None = None,
    ) -> Completion:
        payload: dict[str, Any] = {"model": model, "messages": messages}
        if response_format is not None:
            payload["response_format"] = response_format
        data = await self._post(payload)
        choice = self._first_choice(data)
        return Completion(
            content=(choice.get("message") or {}).get("content") or "",
            model=data.get("model") or model,
            usage=self._parse_usage(data),
        )

    async def complete_with_tools(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ToolCompletion:
        payload: dict[str, Any] = {"model": model, "messages": messages}
        if tools:
            payload["tools"] = tools
        data = await self._post(payload)
        choice = self._first_choice(data)
        raw_message = choice.get("message") or {}
        tool_calls = [
            ToolCall(
                id=call.get("id", ""),
                name=(call.get("function") or {}).get("name", ""),
                arguments=(call.get("function") or {}).get("arguments") or "{}",
            )
            for call in raw_message.get("tool_calls") or []
        ]
        return ToolCompletion(
            message=AssistantMessage(
                content=raw_message.get("content"), tool_calls=tool_calls
            ),
            finish_reason=choice.get("finish_reason") or FinishReason.STOP.value,
            model=data.get("model") or model,
            usage=self._parse_usage(data),
        )

    def _build_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/chat/completions"
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=payload, headers=self._build_headers()
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(
                        url, json=payload, headers=self._build_headers()
                    )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ReasoningError(
                f"reasoning service returned {exc.response.status_code}: "
                f"{exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ReasoningError(f"reasoning service unreachable: {exc}") from exc
        except ValueError as exc:
            raise ReasoningError("reasoning service returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise ReasoningError("reasoning service returned a non-object body")
        return data

    @staticmethod
    def _first_choice(data: dict[str, Any]) -> dict[str, Any]:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise ReasoningError("reasoning service returned no choices")
        return choices[0]

    @staticmethod
    def _parse_usage(data: dict[str, Any]) -> Usage:
        usage = data.get("usage") or {}
        return Usage(
            prompt_tokens=usage.get("prompt_tokens") or 0,
            completion_tokens=usage.get("completion_tokens") or 0,
            cost_usd=usage.get("cost") or 0.0,
        )


class ModelRouter:
    """Routes tiered requests to concrete models and records their spend.

    Every call checks the kill switch first.  Each completion is logged as
    an :class:`AiCallRecord` attributed to the goal that caused it, which
    is what the evaluator's cost check reads back.
    """

    def __init__(
        self,
        provider: AiProvider,
        tier_models: dict[Tier, str],
        store: GoalStore,
        kill_switch: KillSwitchGuard,
    ) -> None:
        self._provider = provider
        self._tier_models = dict(tier_models)
        self._store = store
        self._kill_switch = kill_switch

    def model_for(self, tier: Tier) -> str:
        try:
            return self._tier_models[tier]
        except KeyError:
            raise ReasoningError(f"no model configured for tier {tier}") from None

    async def complete(
        self,
        tier: Tier,
        messages: list[dict[str, Any]],
        *,
        goal_id: int | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> Completion:
        """Plain completion at *tier*."""
        self._kill_switch.assert_active()
        model = self.model_for(tier)
        completion = await self._provider.complete(
            model, messages, response_format=response_format
        )
        self._log_call(completion.model or model, tier, completion.usage, goal_id)
        return completion

    async def complete_with_tools(
        self,
        tier: Tier,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        *,
        goal_id: int | None = None,
    ) -> ToolCompletion:
        """Tool-augmented completion at *tier*."""
        self._kill_switch.assert_active()
        model = self.model_for(tier)
        completion = await self._provider.complete_with_tools(model, messages, tools)
        self._log_call(completion.model or model, tier, completion.usage, goal_id)
        return completion

    def goal_spend(self, goal_id: int, window_hours: float) -> float:
        """USD attributed to *goal_id* over the trailing window."""
        since = datetime.now(UTC) - timedelta(hours=window_hours)
        return self._store.goal_spend_since(goal_id, since)

    def _log_call(
        self, model: str, tier: Tier, usage: Usage, goal_id: int | None
    ) -> None:
        try:
            self._store.insert_ai_call(
                AiCallRecord(
                    model=model,
                    tier=tier,
                    prompt_tokens=usage.prompt_tokens,
                    completion_tokens=usage.completion_tokens,
                    cost_usd=usage.cost_usd,
                    goal_id=goal_id,
                )
            )
        except Exception:
            logger.warning(
                "Failed to record AI call for %s",
                model,
                exc_info=True,
                extra={"goal": goal_id, "tier": str(tier)},
            )
