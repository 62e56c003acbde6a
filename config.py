"""Autopilot configuration via Pydantic."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

from models import Tier

logger = logging.getLogger("autopilot.config")

_DEFAULT_MODEL_STRONG = "anthropic/claude-opus-4.6"
_DEFAULT_MODEL_MID = "anthropic/claude-sonnet-4.5"
_DEFAULT_MODEL_CHEAP = "x-ai/grok-4.1-fast"


class AutopilotConfig(BaseModel):
    """Configuration for the Autopilot runtime."""

    # Paths (auto-detected)
    state_file: Path = Field(
        default=Path("."), description="Path to the durable store JSON file"
    )
    log_file: Path | None = Field(
        default=None, description="Optional rotating JSON log file"
    )

    # Config file persistence
    config_file: Path | None = Field(
        default=None,
        description="Path to JSON config file for persisting runtime changes",
    )

    # Execution loop
    max_turns_per_sub_goal: int = Field(
        default=20,
        ge=1,
        le=200,
        description="Reasoning turns allowed per sub-goal before it fails",
    )
    cycle_sleep_interval: float = Field(
        default=5,
        ge=0,
        le=3600,
        description="Seconds between passes of the continuous loop",
    )
    tool_timeout: float = Field(
        default=30, gt=0, le=3600, description="Default seconds per tool invocation"
    )

    # Supervision
    max_concurrent_goals: int = Field(
        default=5, ge=1, le=100, description="Concurrently running goal loops"
    )
    supervisor_interval: float = Field(
        default=10,
        gt=0,
        le=3600,
        description="Seconds between supervisor reconciliation ticks",
    )
    stagger_delay: float = Field(
        default=2.0,
        ge=0,
        le=300,
        description="Seconds between spawns during a staggered restart",
    )

    # Divergence / replanning
    replan_limit: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Replans allowed per goal before escalating to the operator",
    )
    cost_threshold_usd: float = Field(
        default=5.0,
        ge=0,
        description="Per-goal spend over the window that counts as major divergence",
    )
    cost_window_hours: float = Field(
        default=24, gt=0, le=24 * 30, description="Trailing spend window in hours"
    )

    # Durability
    checkpoint_retry_delay: float = Field(
        default=0.5,
        ge=0,
        le=60,
        description="Seconds between checkpoint attempts",
    )
    kill_switch_cache_ttl: float = Field(
        default=1.0,
        ge=0,
        le=60,
        description="Seconds a kill-switch lookup is cached",
    )

    # Reasoning service
    model_strong: str = Field(
        default=_DEFAULT_MODEL_STRONG, description="Model for the strong tier"
    )
    model_mid: str = Field(default=_DEFAULT_MODEL_MID, description="Model for the mid tier")
    model_cheap: str = Field(
        default=_DEFAULT_MODEL_CHEAP, description="Model for the cheap tier"
    )
    openrouter_api_key: str = Field(
        default="", description="API key for the OpenRouter reasoning service"
    )
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="Base URL of the OpenAI-compatible reasoning API",
    )
    request_timeout: float = Field(
        default=120, gt=0, le=900, description="Seconds per reasoning HTTP request"
    )

    # Operator notifications
    notify_webhook_url: str = Field(
        default="",
        description="Webhook for operator notifications; empty logs them only",
    )

    model_config = {"arbitrary_types_allowed": True}

    def tier_models(self) -> dict[Tier, str]:
        """Return the tier to concrete model id mapping."""
        return {
            Tier.STRONG: self.model_strong,
            Tier.MID: self.model_mid,
            Tier.CHEAP: self.model_cheap,
        }

    @model_validator(mode="after")
    def resolve_defaults(self) -> AutopilotConfig:
        """Resolve paths and apply env var overrides.

        Environment variables (checked while a field is still at its default):
            AUTOPILOT_STATE_FILE             → state_file
            AUTOPILOT_MODEL_STRONG           → model_strong
            AUTOPILOT_MODEL_MID              → model_mid
            AUTOPILOT_MODEL_CHEAP            → model_cheap
            AUTOPILOT_OPENROUTER_API_KEY     → openrouter_api_key
            OPENROUTER_API_KEY               → openrouter_api_key (fallback)
            AUTOPILOT_NOTIFY_WEBHOOK_URL     → notify_webhook_url
            AUTOPILOT_MAX_CONCURRENT_GOALS   → max_concurrent_goals
            AUTOPILOT_REPLAN_LIMIT           → replan_limit
        """
        # Paths
        if self.state_file == Path("."):
            env_state = os.environ.get("AUTOPILOT_STATE_FILE", "")
            if env_state:
                object.__setattr__(self, "state_file", Path(env_state))
            else:
                object.__setattr__(
                    self, "state_file", Path.cwd().resolve() / ".autopilot" / "state.json"
                )

        # Model ids
        _ENV_MODEL_MAP: dict[str, tuple[str, str]] = {
            "AUTOPILOT_MODEL_STRONG": ("model_strong", _DEFAULT_MODEL_STRONG),
            "AUTOPILOT_MODEL_MID": ("model_mid", _DEFAULT_MODEL_MID),
            "AUTOPILOT_MODEL_CHEAP": ("model_cheap", _DEFAULT_MODEL_CHEAP),
        }
        for env_key, (field_name, default_val) in _ENV_MODEL_MAP.items():
            env_val = os.environ.get(env_key, "")
            if env_val and getattr(self, field_name) == default_val:
                object.__setattr__(self, field_name, env_val)

        # API key: explicit value → AUTOPILOT_OPENROUTER_API_KEY → OPENROUTER_API_KEY
        if not self.openrouter_api_key:
            env_key = os.environ.get(
                "AUTOPILOT_OPENROUTER_API_KEY", ""
            ) or os.environ.get("OPENROUTER_API_KEY", "")
            if env_key:
                object.__setattr__(self, "openrouter_api_key", env_key)

        if not self.notify_webhook_url:
            env_hook = os.environ.get("AUTOPILOT_NOTIFY_WEBHOOK_URL", "")
            if env_hook:
                object.__setattr__(self, "notify_webhook_url", env_hook)

        # Concurrency cap override
        if self.max_concurrent_goals == 5:  # still at default
            env_cap = os.environ.get("AUTOPILOT_MAX_CONCURRENT_GOALS")
            if env_cap is not None:
                with contextlib.suppress(ValueError):
                    object.__setattr__(self, "max_concurrent_goals", int(env_cap))

        # Replan limit override
        if self.replan_limit == 5:  # still at default
            env_limit = os.environ.get("AUTOPILOT_REPLAN_LIMIT")
            if env_limit is not None:
                with contextlib.suppress(ValueError):
                    object.__setattr__(self, "replan_limit", int(env_limit))

        return self


def load_config_file(path: Path | None) -> dict[str, Any]:
    """Load a JSON config file and return its contents as a dict.

    Returns an empty dict if the file is missing, unreadable, or invalid.
    """
    if path is None:
        return {}
    try:
        data = json.loads(path.read_text())
        if not isinstance(data, dict):
            return {}
        return data
    except (FileNotFoundError, json.JSONDecodeError, OSError):
        return {}


def save_config_file(path: Path | None, values: dict[str, Any]) -> None:
    """Save config values to a JSON file, merging with existing contents."""
    if path is None:
        return
    existing = load_config_file(path)
    existing.update(values)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(existing, indent=2) + "\n")
    except OSError:
        logger.warning("Failed to write config file %s", path)
