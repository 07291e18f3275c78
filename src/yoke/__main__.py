"""CLI entrypoint for Yoke."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import yoke.cdp  # noqa: F401  (registers the "cdp" actuator)
from yoke.actuator import get_actuator_class, list_actuators
from yoke.config import YokeConfig, config_path, load_config, save_config
from yoke.exit_detector import ExitDetector
from yoke.model_selector import ModelSelector
from yoke.models import model_label
from yoke.rate_limiter import HourlyLimitStatus, RateLimitDecider, RateLimitDecision, RateLimiter
from yoke.schemas import LoopStatus
from yoke.task_list import TaskList

logger = logging.getLogger(__name__)


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so CDP settings are found regardless of cwd."""
    try:
        from dotenv import load_dotenv
    except ImportError:
        return
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


_load_dotenv()


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all sub-commands."""
    p = argparse.ArgumentParser(
        prog="yoke",
        description="Yoke - drive a chat AI coding assistant in an autonomous loop.",
    )
    p.add_argument(
        "--workspace",
        type=str,
        default=".",
        help="Workspace directory holding the task list and .yoke/ state (default: cwd).",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    sub = p.add_subparsers(dest="command")

    # Run sub-command
    run_p = sub.add_parser("run", help="Run an autonomous session.")
    run_p.add_argument("--goal", type=str, default="", help="Objective used on the first loop.")
    run_p.add_argument("--max-loops", type=int, default=None, help="Override max_loops.")
    run_p.add_argument(
        "--interval", type=float, default=None, help="Override loop_interval_seconds."
    )
    run_p.add_argument(
        "--actuator",
        type=str,
        default="cdp",
        help="Actuator to drive the assistant with (default: cdp).",
    )
    run_p.add_argument(
        "--no-auto-switch", action="store_true", help="Keep one model for the whole session."
    )
    run_p.add_argument(
        "--auto-commit", action="store_true", help="Commit progress every commit_every_loops loops."
    )
    run_p.add_argument(
        "--on-hourly-limit",
        choices=("ask", "wait", "exit"),
        default="ask",
        help="What to do when the hourly call cap trips (default: ask).",
    )

    # Status sub-command
    status_p = sub.add_parser("status", help="Show persisted rate-limit and exit-signal state.")
    status_p.add_argument("--json", action="store_true", help="Print machine-readable JSON.")

    # Reset sub-command
    reset_p = sub.add_parser("reset", help="Clear persisted state.")
    reset_p.add_argument("--rate-limits", action="store_true", help="Only reset rate limits.")
    reset_p.add_argument("--exit-signals", action="store_true", help="Only reset exit signals.")

    # Classify sub-command
    classify_p = sub.add_parser("classify", help="Show the category and model for a task.")
    classify_p.add_argument("task", nargs="+", help="Task description.")

    # Next-task sub-command
    sub.add_parser("next-task", help="Print the next open item of the task list.")

    # Config sub-command
    config_p = sub.add_parser("config", help="Print the effective configuration.")
    config_p.add_argument(
        "--init", action="store_true", help="Write the defaults to .yoke/config.json."
    )
    config_p.add_argument(
        "--force", action="store_true", help="With --init, overwrite an existing file."
    )
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested sub-command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    workspace = Path(args.workspace).resolve()
    if not workspace.is_dir():
        print(f"Error: workspace does not exist: {workspace}", file=sys.stderr)
        return 1

    if args.command == "run":
        return _run_session(args, workspace)
    if args.command == "status":
        return _show_status(args, workspace)
    if args.command == "reset":
        return _reset_state(args, workspace)
    if args.command == "classify":
        return _classify(args, workspace)
    if args.command == "next-task":
        return _next_task(workspace)
    if args.command == "config":
        return _show_config(args, workspace)

    parser.print_help()
    return 1


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


async def _ask_operator(status: HourlyLimitStatus) -> RateLimitDecision:
    """Prompt on stdin: wait for the hourly window to reset, or exit."""
    question = (
        f"\nHourly call limit reached ({status.calls_this_hour}/{status.max_calls}). "
        f"Resets in {status.minutes_until_reset} min. [w]ait or [e]xit? "
    )
    try:
        answer = await asyncio.to_thread(input, question)
    except EOFError:
        return "exit"
    return "wait" if answer.strip().lower().startswith("w") else "exit"


def _decider_for(choice: str) -> RateLimitDecider:
    if choice == "ask":
        return _ask_operator

    async def fixed(status: HourlyLimitStatus) -> RateLimitDecision:
        return "wait" if choice == "wait" else "exit"

    return fixed


def _print_status(status: LoopStatus) -> None:
    logger.debug(
        "status: loop=%d model=%s circuit=%s message=%s",
        status.loop_count,
        status.current_model,
        status.circuit_state.value,
        status.message,
    )


async def _drive(args: argparse.Namespace, workspace: Path, config: YokeConfig) -> LoopStatus | None:
    from yoke.orchestrator import build_orchestrator

    try:
        actuator_cls = get_actuator_class(args.actuator)
    except KeyError as exc:
        print(f"Error: {exc.args[0]}", file=sys.stderr)
        return None
    actuator = actuator_cls()
    try:
        if not await actuator.connect():
            print(
                "Error: could not reach the assistant. Start the editor with "
                "--remote-debugging-port in the 9000-9030 range.",
                file=sys.stderr,
            )
            return None
        orchestrator = build_orchestrator(
            workspace,
            actuator,
            config,
            decide_on_hourly_limit=_decider_for(args.on_hourly_limit),
            on_status=_print_status,
        )
        return await orchestrator.start(args.goal or None)
    finally:
        await actuator.close()


def _run_session(args: argparse.Namespace, workspace: Path) -> int:
    """Run one autonomous session and print its summary."""
    overrides: dict[str, object] = {
        "max_loops": args.max_loops,
        "loop_interval_seconds": args.interval,
    }
    if args.no_auto_switch:
        overrides["auto_switch_models"] = False
    if args.auto_commit:
        overrides["auto_git_commit"] = True
    config = load_config(workspace, **overrides)

    try:
        status = asyncio.run(_drive(args, workspace, config))
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    if status is None:
        return 1

    print("\n" + "=" * 60)
    print("  Yoke - Session Summary")
    print("=" * 60)
    print(f"  Phase:       {status.phase.value}")
    print(f"  Loops:       {status.loop_count}")
    print(f"  Last model:  {model_label(status.current_model)}")
    print(f"  Circuit:     {status.circuit_state.value}")
    print(f"  Stop reason: {status.message}")
    if status.guidance:
        print(f"  {status.guidance['label']}: {status.guidance['summary']}")
        for step in status.guidance["next_steps"]:
            print(f"    - {step}")
    print("=" * 60)
    return 0


# ---------------------------------------------------------------------------
# status / reset
# ---------------------------------------------------------------------------


def _show_status(args: argparse.Namespace, workspace: Path) -> int:
    config = load_config(workspace)
    limiter = RateLimiter(
        workspace, limits=config.call_limits(), window_seconds=config.rate_limit_window_seconds
    )
    detector = ExitDetector(workspace)
    task_list = TaskList(workspace / config.task_list_file)
    done, total = task_list.progress()
    rows = limiter.stats()

    if args.json:
        payload = {
            "workspace": str(workspace),
            "taskList": {"path": str(task_list.path), "done": done, "total": total},
            "rateLimits": {
                row.model_id.value: {"used": row.used, "limit": row.limit, "available": row.available}
                for row in rows
            },
            "globalCalls": limiter.global_calls,
            "exitSignals": detector.history.model_dump(by_alias=True),
        }
        print(json.dumps(payload, indent=2))
        return 0

    print(f"\n  Workspace:  {workspace}")
    print(f"  Task list:  {task_list.path.name} ({done}/{total} done)")
    print(f"  Current:    {task_list.describe_current()}")
    print(f"\n  {'Model':<30}  {'Used':>5}  {'Limit':>5}  Available")
    print(f"  {'-' * 30}  {'-' * 5}  {'-' * 5}  {'-' * 9}")
    for row in rows:
        print(
            f"  {model_label(row.model_id):<30}  {row.used:>5}  {row.limit:>5}  "
            f"{'yes' if row.available else 'no'}"
        )
    history = detector.history
    print(f"\n  Total calls:          {limiter.global_calls}")
    print(f"  Test-only loops:      {history.test_only_loops}")
    print(f"  Done signals:         {history.done_signals}")
    print(f"  Completion signals:   {history.completion_indicators}")
    print(f"  Consecutive failures: {history.consecutive_failures}\n")
    return 0


def _reset_state(args: argparse.Namespace, workspace: Path) -> int:
    both = not args.rate_limits and not args.exit_signals
    if args.rate_limits or both:
        config = load_config(workspace)
        RateLimiter(workspace, limits=config.call_limits()).reset_all()
        print("Rate limits reset.")
    if args.exit_signals or both:
        ExitDetector(workspace).reset()
        print("Exit signals reset.")
    return 0


# ---------------------------------------------------------------------------
# classify / next-task / config
# ---------------------------------------------------------------------------


def _classify(args: argparse.Namespace, workspace: Path) -> int:
    config = load_config(workspace)
    limiter = RateLimiter(
        workspace, limits=config.call_limits(), window_seconds=config.rate_limit_window_seconds
    )
    task = " ".join(args.task)
    selection = ModelSelector(config).select_for_task(task, limiter.get_unavailable())
    if selection is None:
        print("No model available: every candidate is rate limited.", file=sys.stderr)
        return 1
    print(f"Category: {selection.category.value}")
    print(f"Model:    {selection.label} ({selection.model_id.value})")
    print(f"Why:      {selection.reasoning}")
    return 0


def _next_task(workspace: Path) -> int:
    config = load_config(workspace)
    task_list = TaskList(workspace / config.task_list_file)
    if not task_list.exists():
        print(f"No task list at {task_list.path}", file=sys.stderr)
        return 1
    task = task_list.next_task()
    if task is None:
        print("All tasks complete.")
        return 1
    print(task)
    return 0


def _show_config(args: argparse.Namespace, workspace: Path) -> int:
    path = config_path(workspace)
    if args.init:
        if path.exists() and not args.force:
            print(f"Config already exists: {path} (use --force to overwrite)", file=sys.stderr)
            return 1
        save_config(workspace, YokeConfig())
        print(f"Wrote {path}")
        return 0
    config = load_config(workspace)
    print(config.model_dump_json(indent=2))
    print(f"\n# source: {path if path.exists() else 'defaults'}")
    print(f"# actuators: {', '.join(list_actuators()) or '(none loaded)'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
