"""Data models for Autopilot."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


# --- Enumerations ---


class GoalSource(StrEnum):
    """Where a goal came from."""

    OPERATOR = "operator-injected"
    AGENT = "agent-discovered"


class GoalStatus(StrEnum):
    """Lifecycle status of a top-level goal."""

    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"
    ABANDONED = "abandoned"


class SubGoalStatus(StrEnum):
    """Execution status of a sub-goal."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Dependencies in one of these states no longer block their dependants.
SATISFIED_STATUSES = frozenset({SubGoalStatus.COMPLETED, SubGoalStatus.SKIPPED})

# Reaching one of these stamps ``completed_at``.
TERMINAL_STATUSES = frozenset({SubGoalStatus.COMPLETED, SubGoalStatus.FAILED})


class Severity(StrEnum):
    """How far an outcome drifted from the goal's intent."""

    NONE = "none"
    MINOR = "minor"
    MAJOR = "major"


class Tier(StrEnum):
    """Cost/capability class of a reasoning request."""

    CHEAP = "cheap"
    MID = "mid"
    STRONG = "strong"


class FinishReason(StrEnum):
    """Known finish reasons reported by the reasoning service."""

    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"


class CycleStatus(StrEnum):
    """Status recorded on a planning-cycle log row."""

    ACTIVE = "active"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


# --- Goals ---


class Goal(BaseModel):
    """A unit of top-level intent."""

    id: int
    description: str
    source: GoalSource = GoalSource.OPERATOR
    priority: int = 50
    status: GoalStatus = GoalStatus.ACTIVE
    pause_reason: str | None = None
    replan_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SubGoal(BaseModel):
    """An actionable unit owned by exactly one goal."""

    id: int
    goal_id: int
    description: str
    depends_on: list[int] = Field(default_factory=list)
    priority: int = 50
    status: SubGoalStatus = SubGoalStatus.PENDING
    outcome: Any = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


class SubGoalDescriptor(BaseModel):
    """A planner-produced sub-goal before it has a durable id.

    ``depends_on`` holds 0-based positions into the descriptor list.
    """

    description: str = Field(min_length=1)
    depends_on: list[int] = Field(default_factory=list)
    priority: int = 0


# --- Evaluation / replanning ---


class EvaluationResult(BaseModel):
    """Divergence verdict for a single sub-goal outcome."""

    divergent: bool = False
    severity: Severity = Severity.NONE
    reason: str | None = None


class ReplanResult(BaseModel):
    """Outcome of a replan request."""

    replanned: bool = False
    escalated: bool = False
    reason: str | None = None


class ExecutionResult(BaseModel):
    """Result of driving one sub-goal through the tool-calling loop."""

    success: bool = False
    outcome: Any = None


# --- Journal / cycle log ---


class JournalEntry(BaseModel):
    """Durable record of a sub-goal's terminal outcome."""

    sub_goal_id: int
    goal_id: int
    completed_at: datetime = Field(default_factory=utcnow)
    outcome: Any = None
    status: SubGoalStatus

    @field_validator("status")
    @classmethod
    def _terminal_only(cls, v: SubGoalStatus) -> SubGoalStatus:
        if v not in (
            SubGoalStatus.COMPLETED,
            SubGoalStatus.FAILED,
            SubGoalStatus.SKIPPED,
        ):
            raise ValueError(f"journal entries must be terminal, got {v!r}")
        return v


class PlanningCycle(BaseModel):
    """One row of the append-only planning-cycle log.

    Start rows have ``parent_id=None``; completion and interruption rows
    point back at their start row.
    """

    id: int
    parent_id: int | None = None
    goals: dict[str, Any] = Field(default_factory=dict)
    status: CycleStatus = CycleStatus.ACTIVE
    outcomes: dict[str, Any] | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


class ToolCallRecord(BaseModel):
    """One row of the append-only tool-call log."""

    id: int
    parent_id: int | None = None
    tool_name: str
    status: str = "started"  # started | success | failure
    input: Any = None
    output: Any = None
    error: str | None = None
    duration_ms: int | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


class AiCallRecord(BaseModel):
    """Spend and token usage of a single reasoning call."""

    model: str
    tier: Tier
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0
    goal_id: int | None = None
    created_at: datetime = Field(default_factory=utcnow)


class KillSwitchAudit(BaseModel):
    """Audit trail row for kill-switch toggles."""

    action: str  # activate | deactivate
    reason: str
    triggered_by: str = "cli"
    created_at: datetime = Field(default_factory=utcnow)


# --- Reasoning wire types ---


class ToolCall(BaseModel):
    """A tool invocation requested by the assistant."""

    id: str
    name: str
    arguments: str = "{}"


class AssistantMessage(BaseModel):
    """The assistant turn returned by a tool-augmented completion."""

    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)

    def as_param(self) -> dict[str, Any]:
        """Render in the chat-completions message format."""
        param: dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            param["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return param


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0


class Completion(BaseModel):
    """Plain text completion."""

    content: str = ""
    model: str = ""
    usage: Usage = Field(default_factory=Usage)


class ToolCompletion(BaseModel):
    """Tool-augmented completion."""

    message: AssistantMessage = Field(default_factory=AssistantMessage)
    finish_reason: str = FinishReason.STOP.value
    model: str = ""
    usage: Usage = Field(default_factory=Usage)


# --- Tools ---


class ToolResult(BaseModel):
    """Structured result of a tool invocation; failures are data."""

    success: bool
    output: Any = None
    error: str | None = None


# --- Recovery ---


class RecoveryResult(BaseModel):
    """Counts reported by startup recovery."""

    recovered: int = 0
    escalated: int = 0


# --- State Persistence ---


class StoreData(BaseModel):
    """Typed schema for the JSON-backed goal store."""

    goals: dict[str, Goal] = Field(default_factory=dict)
    sub_goals: dict[str, SubGoal] = Field(default_factory=dict)
    planning_cycles: list[PlanningCycle] = Field(default_factory=list)
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    ai_calls: list[AiCallRecord] = Field(default_factory=list)
    kill_switch_audit: list[KillSwitchAudit] = Field(default_factory=list)
    agent_state: dict[str, Any] = Field(default_factory=dict)
    sequences: dict[str, int] = Field(default_factory=dict)
    last_updated: str | None = None
