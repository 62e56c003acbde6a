"""Divergence detection for sub-goal outcomes."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ValidationError

from config import AutopilotConfig
from models import EvaluationResult, Severity, SubGoal, Tier
from reasoning import ModelRouter

logger = logging.getLogger("autopilot.evaluator")

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_MAX_OUTCOME_CHARS = 2_000


class _Classification(BaseModel):
    divergent: bool
    reason: str | None = None
    severity: Severity = Severity.NONE


class Evaluator:
    """Decides whether an outcome drifted from its goal's intent.

    Checks run cheapest first: a failed outcome or a goal over its spend
    budget is major divergence without asking the reasoning service.  Only
    then is the cheap tier asked to classify alignment, and any failure of
    that classification counts as non-divergent.
    """

    def __init__(self, config: AutopilotConfig, router: ModelRouter) -> None:
        self._config = config
        self._router = router

    async def evaluate_outcome(
        self, sub_goal: SubGoal, outcome: Any, goal_description: str
    ) -> EvaluationResult:
        """Classify *outcome* of *sub_goal* against *goal_description*."""
        if isinstance(outcome, Mapping) and outcome.get("success") is False:
            return EvaluationResult(
                divergent=True,
                severity=Severity.MAJOR,
                reason=f"Sub-goal #{sub_goal.id} failed",
            )

        over_budget = self._check_cost(sub_goal.goal_id)
        if over_budget is not None:
            return over_budget

        return await self._classify(sub_goal, outcome, goal_description)

    def should_replan(self, evaluations: list[EvaluationResult]) -> bool:
        """True on any major, more than two minors, or a divergent majority of 4+."""
        if any(e.severity == Severity.MAJOR for e in evaluations):
            return True
        if sum(1 for e in evaluations if e.severity == Severity.MINOR) > 2:
            return True
        divergent = sum(1 for e in evaluations if e.divergent)
        return len(evaluations) >= 4 and divergent * 2 > len(evaluations)

    def _check_cost(self, goal_id: int) -> EvaluationResult | None:
        try:
            spend = self._router.goal_spend(goal_id, self._config.cost_window_hours)
        except Exception:
            logger.warning(
                "Spend lookup failed; skipping cost check",
                exc_info=True,
                extra={"goal": goal_id},
            )
            return None
        if spend > self._config.cost_threshold_usd:
            return EvaluationResult(
                divergent=True,
                severity=Severity.MAJOR,
                reason=(
                    f"Goal spend ${spend:.2f} over the last "
                    f"{self._config.cost_window_hours:g}h exceeds "
                    f"${self._config.cost_threshold_usd:.2f}"
                ),
            )
        return None

    async def _classify(
        self, sub_goal: SubGoal, outcome: Any, goal_description: str
    ) -> EvaluationResult:
        outcome_text = json.dumps(outcome, default=str)[:_MAX_OUTCOME_CHARS]
        system_prompt = f"""You evaluate whether an autonomous agent's work is still aligned with its goal.

GOAL:
{goal_description}

SUB-GOAL:
{sub_goal.description}

OUTCOME:
{outcome_text}

Severity guide: "none" when aligned, "minor" for drift that can be corrected later, "major" when the work contradicts or abandons the goal.

Respond with ONLY a JSON object:
{{"divergent": true|false, "reason": "...", "severity": "none"|"minor"|"major"}}"""
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": "Evaluate the outcome now."},
        ]
        try:
            response = await self._router.complete(
                Tier.CHEAP,
                messages,
                goal_id=sub_goal.goal_id,
                response_format={"type": "json_object"},
            )
            parsed = _Classification.model_validate_json(
                _FENCE_RE.sub("", response.content.strip())
            )
        except (ValidationError, ValueError) as exc:
            logger.warning(
                "Unparseable evaluation; treating as aligned: %s",
                exc,
                extra={"goal": sub_goal.goal_id, "sub_goal": sub_goal.id},
            )
            return EvaluationResult()
        except Exception:
            logger.warning(
                "Evaluation call failed; treating as aligned",
                exc_info=True,
                extra={"goal": sub_goal.goal_id, "sub_goal": sub_goal.id},
            )
            return EvaluationResult()

        if not parsed.divergent:
            return EvaluationResult(reason=parsed.reason)
        severity = parsed.severity if parsed.severity != Severity.NONE else Severity.MINOR
        return EvaluationResult(divergent=True, severity=severity, reason=parsed.reason)
