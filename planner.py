"""Goal decomposition prompt and response parsing."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from models import SubGoalDescriptor, Tier
from reasoning import ModelRouter

logger = logging.getLogger("autopilot.planner")


class DecompositionError(ValueError):
    """Raised when a decomposition response cannot be turned into sub-goals."""


_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\n?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\n?```$")


def _format_tool_list(available_tools: list[dict[str, str]]) -> str:
    lines = [f"  - {t['name']}: {t['description']}" for t in available_tools]
    return "\n".join(lines) or "  (none)"


def build_decomposition_prompt(
    goal_description: str, available_tools: list[dict[str, str]]
) -> str:
    """Build the system prompt that asks for a minimal sub-goal list."""
    return f"""You are an autonomous AI agent planning system. Your task is to decompose a high-level goal into a minimal, ordered list of concrete sub-goals.

GOAL TO DECOMPOSE:
{goal_description}

AVAILABLE TOOLS:
{_format_tool_list(available_tools)}

DECOMPOSITION RULES:
1. Keep sub-goals concrete and actionable. Each sub-goal should be completable by invoking one or more tools.
2. AVOID OVER-DECOMPOSITION: Only create sub-goals that have meaningful execution weight. Do NOT split trivial operations into multiple sub-goals. Each sub-goal carries planning and context cost.
3. Use dependsOn to express ordering constraints. dependsOn contains 0-based indices into this array (e.g., if sub-goal 2 must run after sub-goals 0 and 1, set dependsOn: [0, 1]).
4. Priority 0 = highest priority. Assign priorities 0, 10, 20... in execution order.
5. Aim for 2-8 sub-goals for typical goals. Single-step goals should have exactly 1 sub-goal.
6. Do NOT create sub-goals for monitoring or reporting unless the goal explicitly requires it.

Respond with ONLY a valid JSON array. No explanation, no markdown fences, just the raw JSON array:
[
  {{
    "description": "...",
    "dependsOn": [],
    "priority": 0
  }}
]"""


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def parse_decomposition(content: str) -> list[SubGoalDescriptor]:
    """Parse a decomposition response into descriptors.

    Tolerates a markdown code fence around the JSON.  Raises
    :class:`DecompositionError` for anything that is not a non-empty array
    of objects with a description and integer ``dependsOn`` entries.
    """
    text = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", content.strip()))
    try:
        raw = json.loads(text)
    except json.JSONDecodeError:
        raise DecompositionError(
            f"decomposition returned invalid JSON: {content[:200]}"
        ) from None

    if not isinstance(raw, list):
        raise DecompositionError(
            f"decomposition expected a JSON array, got {type(raw).__name__}"
        )
    if not raw:
        raise DecompositionError("decomposition returned no sub-goals")

    descriptors: list[SubGoalDescriptor] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise DecompositionError(f"sub-goal[{idx}] is not an object")
        description = item.get("description")
        if not isinstance(description, str) or not description:
            raise DecompositionError(f"sub-goal[{idx}] missing description")

        raw_deps = item.get("dependsOn")
        depends_on: list[int] = []
        if isinstance(raw_deps, list):
            for di, dep in enumerate(raw_deps):
                if not _is_int(dep):
                    raise DecompositionError(
                        f"sub-goal[{idx}].dependsOn[{di}] must be an integer"
                    )
                depends_on.append(dep)

        priority = item.get("priority")
        descriptors.append(
            SubGoalDescriptor(
                description=description,
                depends_on=depends_on,
                priority=priority if _is_int(priority) else idx * 10,
            )
        )
    return descriptors


async def plan_goal_decomposition(
    router: ModelRouter,
    goal_description: str,
    available_tools: list[dict[str, str]],
    *,
    goal_id: int | None = None,
) -> list[SubGoalDescriptor]:
    """Ask the strong tier to decompose *goal_description* into sub-goals."""
    messages = [
        {
            "role": "system",
            "content": build_decomposition_prompt(goal_description, available_tools),
        },
        {"role": "user", "content": "Decompose the goal into sub-goals now."},
    ]
    response = await router.complete(Tier.STRONG, messages, goal_id=goal_id)
    descriptors = parse_decomposition(response.content)
    logger.info(
        "Decomposed goal into %d sub-goals",
        len(descriptors),
        extra={"goal": goal_id},
    )
    return descriptors
