"""CLI entry point for Autopilot."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from config import AutopilotConfig, load_config_file, save_config_file
from kill_switch import activate_kill_switch, deactivate_kill_switch
from log import setup_logging
from models import GoalSource
from orchestrator import AutopilotOrchestrator
from store import GoalStore

logger = logging.getLogger("autopilot.cli")

# CLI flags that map onto AutopilotConfig tuning fields.
TUNING_FIELDS = (
    "max_concurrent_goals",
    "max_turns_per_sub_goal",
    "replan_limit",
    "supervisor_interval",
    "cost_threshold_usd",
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="autopilot",
        description="Autopilot: goals in, supervised execution out.",
    )

    # One-shot operator commands
    parser.add_argument(
        "--add-goal",
        metavar="TEXT",
        default=None,
        help="Create an operator goal and exit",
    )
    parser.add_argument(
        "--priority",
        type=int,
        default=50,
        help="Priority for --add-goal; 0 is highest (default: 50)",
    )
    parser.add_argument(
        "--list-goals",
        action="store_true",
        help="Print every goal and its status, then exit",
    )
    parser.add_argument(
        "--kill",
        metavar="REASON",
        default=None,
        help="Engage the kill switch and exit",
    )
    parser.add_argument(
        "--resume",
        metavar="REASON",
        default=None,
        help="Release the kill switch and exit",
    )
    parser.add_argument(
        "--save-config",
        action="store_true",
        help="Merge this command line's tuning flags into --config-file and exit",
    )

    # Runtime configuration
    parser.add_argument(
        "--state-file",
        type=Path,
        default=None,
        help="Path to the state JSON file (default: .autopilot/state.json)",
    )
    parser.add_argument(
        "--config-file",
        type=Path,
        default=None,
        help="JSON config file whose values apply before CLI overrides",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write JSON logs to this rotating file",
    )
    parser.add_argument(
        "--max-concurrent-goals",
        type=int,
        default=None,
        help="Max goal loops running at once (default: 5)",
    )
    parser.add_argument(
        "--max-turns-per-sub-goal",
        type=int,
        default=None,
        help="Reasoning turns per sub-goal before it fails (default: 20)",
    )
    parser.add_argument(
        "--replan-limit",
        type=int,
        default=None,
        help="Replans per goal before escalation (default: 5)",
    )
    parser.add_argument(
        "--supervisor-interval",
        type=float,
        default=None,
        help="Seconds between supervisor reconciliation ticks (default: 10)",
    )
    parser.add_argument(
        "--cost-threshold-usd",
        type=float,
        default=None,
        help="Per-goal 24h spend that counts as major divergence (default: 5.0)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug-level plain-text logging",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> AutopilotConfig:
    """Convert parsed CLI args into an :class:`AutopilotConfig`.

    Values from ``--config-file`` apply first; explicitly-provided CLI
    values override them.  AutopilotConfig supplies all other defaults.
    """
    kwargs: dict[str, Any] = load_config_file(args.config_file)
    if args.config_file is not None:
        kwargs["config_file"] = args.config_file

    for field in ("state_file", "log_file"):
        val = getattr(args, field)
        if val is not None:
            kwargs[field] = val
    kwargs.update(_tuning_overrides(args))

    return AutopilotConfig(**kwargs)


def _tuning_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {f: getattr(args, f) for f in TUNING_FIELDS if getattr(args, f) is not None}


def _save_config(args: argparse.Namespace) -> None:
    if args.config_file is None:
        print("--save-config requires --config-file", file=sys.stderr)
        sys.exit(2)
    overrides = _tuning_overrides(args)
    save_config_file(args.config_file, overrides)
    print(f"Saved {len(overrides)} setting(s) to {args.config_file}")


def _add_goal(config: AutopilotConfig, description: str, priority: int) -> None:
    store = GoalStore(config.state_file)
    goal = store.insert_goal(description, GoalSource.OPERATOR, priority)
    print(f"Created goal #{goal.id} (priority {goal.priority})")


def _list_goals(config: AutopilotConfig) -> None:
    store = GoalStore(config.state_file)
    goals = store.list_goals()
    if not goals:
        print("No goals.")
        return
    for goal in goals:
        line = (
            f"#{goal.id} [{goal.status}] p={goal.priority} "
            f"replans={goal.replan_count} {goal.description}"
        )
        if goal.pause_reason:
            line += f" (paused: {goal.pause_reason})"
        print(line)


async def _run_main(config: AutopilotConfig) -> None:
    """Launch the orchestrator and stop it on SIGINT/SIGTERM."""
    orchestrator = AutopilotOrchestrator(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(orchestrator.stop()))

    await orchestrator.run()


def main(argv: list[str] | None = None) -> None:
    """Entry point."""
    args = parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=level, json_output=not args.verbose, log_file=args.log_file)

    config = build_config(args)

    if args.save_config:
        _save_config(args)
        sys.exit(0)
    if args.kill is not None:
        activate_kill_switch(GoalStore(config.state_file), args.kill, "cli")
        print("Kill switch activated.")
        sys.exit(0)
    if args.resume is not None:
        deactivate_kill_switch(GoalStore(config.state_file), args.resume, "cli")
        print("Kill switch deactivated.")
        sys.exit(0)
    if args.add_goal is not None:
        _add_goal(config, args.add_goal, args.priority)
        sys.exit(0)
    if args.list_goals:
        _list_goals(config)
        sys.exit(0)

    asyncio.run(_run_main(config))


if __name__ == "__main__":
    main()
