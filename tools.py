"""Tool registry and kill-switch-gated invocation."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from kill_switch import KillSwitchActiveError, KillSwitchGuard
from models import ToolResult
from store import GoalStore

logger = logging.getLogger("autopilot.tools")

ToolHandler = Callable[[Any], Awaitable[Any]]


@dataclass
class Tool:
    """A named capability the agent loop can call.

    When *input_model* is set, raw arguments are validated into it and the
    handler receives the model instance; otherwise it receives the raw dict.
    """

    name: str
    description: str
    handler: ToolHandler
    input_model: type[BaseModel] | None = None
    timeout: float | None = None

    def schema(self) -> dict[str, Any]:
        """Return the tool in the chat-completions ``tools`` format."""
        parameters = (
            self.input_model.model_json_schema()
            if self.input_model is not None
            else {"type": "object", "properties": {}}
        )
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


class ToolRegistry:
    """Named tool catalog.

    :meth:`invoke` never raises: kill-switch refusals, unknown names,
    invalid input, timeouts and handler errors all come back as a failed
    :class:`ToolResult`.
    """

    def __init__(
        self, store: GoalStore | None = None, default_timeout: float = 30
    ) -> None:
        self._tools: dict[str, Tool] = {}
        self._store = store
        self._default_timeout = default_timeout

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list(self) -> list[Tool]:
        return list(self._tools.values())

    def count(self) -> int:
        return len(self._tools)

    def catalog(self) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    async def invoke(
        self,
        kill_switch: KillSwitchGuard,
        name: str,
        raw_input: Any,
        timeout: float | None = None,
    ) -> ToolResult:
        """Run tool *name* with *raw_input* and return its structured result."""
        try:
            kill_switch.assert_active()
        except KillSwitchActiveError as exc:
            return ToolResult(success=False, error=str(exc))

        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(success=False, error=f"Unknown tool: {name}")

        try:
            arg = (
                tool.input_model.model_validate(raw_input)
                if tool.input_model is not None
                else raw_input
            )
        except ValidationError as exc:
            return ToolResult(success=False, error=f"Invalid input for {name}: {exc}")

        limit = timeout or tool.timeout or self._default_timeout
        start_id = self._log_start(name, raw_input)
        started = time.monotonic()
        try:
            output = await asyncio.wait_for(tool.handler(arg), timeout=limit)
            result = (
                output
                if isinstance(output, ToolResult)
                else ToolResult(success=True, output=output)
            )
        except TimeoutError:
            result = ToolResult(
                success=False, error=f"Tool {name} timed out after {limit}s"
            )
        except Exception as exc:
            logger.warning("Tool %s raised: %s", name, exc, extra={"tool": name})
            result = ToolResult(success=False, error=str(exc) or type(exc).__name__)

        duration_ms = int((time.monotonic() - started) * 1000)
        self._log_finish(start_id, name, result, duration_ms)
        return result

    # --- tool-call log ---

    def _log_start(self, name: str, raw_input: Any) -> int | None:
        if self._store is None:
            return None
        try:
            return self._store.insert_tool_call(name, "started", input=raw_input).id
        except Exception:
            logger.warning(
                "Failed to log tool call start", exc_info=True, extra={"tool": name}
            )
            return None

    def _log_finish(
        self, start_id: int | None, name: str, result: ToolResult, duration_ms: int
    ) -> None:
        if self._store is None or start_id is None:
            return
        try:
            self._store.insert_tool_call(
                name,
                "success" if result.success else "failure",
                parent_id=start_id,
                output=result.output,
                error=result.error,
                duration_ms=duration_ms,
            )
        except Exception:
            logger.warning(
                "Failed to log tool call result", exc_info=True, extra={"tool": name}
            )
