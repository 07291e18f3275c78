"""User-facing guidance for session stop reasons."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from yoke.schemas import StopReason

StopSeverity = Literal["info", "warn", "error"]


@dataclass(frozen=True)
class GuidanceTemplate:
    """Template for rendering actionable session-stop guidance."""

    label: str
    severity: StopSeverity
    summary: str
    next_steps: tuple[str, ...]


_TEMPLATES: dict[StopReason, GuidanceTemplate] = {
    StopReason.USER_STOPPED: GuidanceTemplate(
        label="Stopped by user",
        severity="warn",
        summary="The session was manually stopped before the work was finished.",
        next_steps=(
            "Review the latest changes to decide where to resume.",
            "Start a new session when ready.",
        ),
    ),
    StopReason.MAX_LOOPS: GuidanceTemplate(
        label="Maximum loops reached",
        severity="warn",
        summary="The session ran the configured number of loops.",
        next_steps=(
            "Increase max_loops in .yoke/config.json for longer sessions.",
            "Review the task list to choose the next focus.",
        ),
    ),
    StopReason.CIRCUIT_OPEN: GuidanceTemplate(
        label="Circuit breaker opened",
        severity="error",
        summary="Several loops produced no file changes or repeated output, and recovery did not help.",
        next_steps=(
            "Read the last responses in the assistant to see where it is stuck.",
            "Split the current task into smaller checklist items, then restart.",
        ),
    ),
    StopReason.MODELS_EXHAUSTED: GuidanceTemplate(
        label="All models rate limited",
        severity="error",
        summary="Every model in the fallback list reported a rate limit.",
        next_steps=(
            "Wait for the rate-limit window to reset, or run `yoke reset --rate-limits`.",
            "Raise per-model limits in model_call_limits if they are too low.",
        ),
    ),
    StopReason.HOURLY_LIMIT_EXIT: GuidanceTemplate(
        label="Hourly call limit",
        severity="warn",
        summary="The hourly call cap was reached and the operator chose to exit.",
        next_steps=(
            "Restart the session after the hour resets.",
            "Increase max_calls_per_hour if the cap is too strict.",
        ),
    ),
    StopReason.TASKS_COMPLETED: GuidanceTemplate(
        label="All tasks completed",
        severity="info",
        summary="Every item in the task list is checked off.",
        next_steps=(
            "Review and test the changes.",
            "Add new checklist items to continue.",
        ),
    ),
    StopReason.EXIT_SIGNAL: GuidanceTemplate(
        label="Exit signal detected",
        severity="info",
        summary="The assistant's replies indicated the work is finished or no longer advancing.",
        next_steps=(
            "Confirm the work is actually done before closing the task.",
            "Refine the goal and rerun if more work remains.",
        ),
    ),
    StopReason.CONSECUTIVE_FAILURES: GuidanceTemplate(
        label="Repeated failures",
        severity="error",
        summary="Several loops in a row failed to send a prompt or receive a reply.",
        next_steps=(
            "Check that the editor is running with remote debugging enabled.",
            "Restart the session once the assistant responds again.",
        ),
    ),
}


def _fallback_guidance(code: str) -> dict[str, object]:
    label = code.replace("_", " ").strip().capitalize() or "Session finished"
    return {
        "code": code,
        "label": label,
        "severity": "warn",
        "summary": "Session finished with an unrecognized stop reason.",
        "next_steps": ["Check the log output for more context."],
    }


def get_stop_guidance(stop_reason: StopReason | str | None) -> dict[str, object] | None:
    """Return user-facing guidance for a session stop reason."""
    if stop_reason is None or not str(getattr(stop_reason, "value", stop_reason)).strip():
        return None
    try:
        reason = StopReason(stop_reason)
    except ValueError:
        return _fallback_guidance(str(stop_reason).strip())
    template = _TEMPLATES[reason]
    return {
        "code": reason.value,
        "label": template.label,
        "severity": template.severity,
        "summary": template.summary,
        "next_steps": list(template.next_steps),
    }
