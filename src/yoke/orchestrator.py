"""Autonomous loop orchestrator.

The :class:`LoopOrchestrator` drives one session against the chat assistant:
each iteration resolves a task, picks a model, injects a prompt through the
:class:`~yoke.actuator.Actuator`, classifies the reply and decides whether to
continue. Every decision engine is passed in, so a session owns exactly one
instance of each.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from yoke.actuator import Actuator
from yoke.circuit_breaker import CircuitBreaker
from yoke.config import YokeConfig
from yoke.exit_detector import ExitDetector
from yoke.git_tools import commit_all, generate_commit_message
from yoke.model_selector import ModelSelector, classify
from yoke.models import FALLBACK_ORDER, model_label
from yoke.progress import ChangedFilesProbe, ProgressTracker
from yoke.rate_limit_fallback import RateLimitFallback
from yoke.rate_limiter import HourlyLimitStatus, HourlyRateLimiter, RateLimitDecider, RateLimiter
from yoke.recovery import RecoveryManager
from yoke.schemas import ExitCheck, LoopResult, LoopStatus, ModelId, SessionPhase, StopReason
from yoke.stop_guidance import get_stop_guidance
from yoke.task_list import TaskList, next_task, parse_checklist
from yoke.waiting import sleep_unless

logger = logging.getLogger(__name__)

StatusCallback = Callable[[LoopStatus], None]
ProgressCommitter = Callable[[int, str | None], Awaitable[object]]

AUTONOMOUS_NOTE = (
    "[Note: Running in autonomous mode. Please make incremental progress and "
    "commit when meaningful checkpoints are reached.]"
)


@dataclass
class _Execution:
    """What one prompt/response round trip produced."""

    success: bool
    response: str | None = None
    error: str | None = None
    rate_limited: bool = False


async def _exit_on_limit(status: HourlyLimitStatus) -> str:
    logger.warning("No operator available for the hourly limit decision; exiting")
    return "exit"


class LoopOrchestrator:
    """Runs a single autonomous session per workspace.

    Parameters
    ----------
    actuator:
        Driver for the assistant UI.
    config:
        Loop knobs; defaults apply when omitted.
    decide_on_hourly_limit:
        Async callable asked to choose ``"wait"`` or ``"exit"`` when the
        hourly cap trips. Without one the session exits.
    commit_progress:
        Async ``(loop_number, task)`` callable run every
        ``commit_every_loops`` loops when ``auto_git_commit`` is enabled.
    on_status:
        Called with a fresh :class:`LoopStatus` after every state change.
    """

    def __init__(
        self,
        actuator: Actuator,
        *,
        config: YokeConfig | None = None,
        model_selector: ModelSelector | None = None,
        rate_limiter: RateLimiter | None = None,
        hourly_limiter: HourlyRateLimiter | None = None,
        fallback: RateLimitFallback | None = None,
        exit_detector: ExitDetector | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        recovery: RecoveryManager | None = None,
        progress: ProgressTracker | None = None,
        task_list: TaskList | None = None,
        decide_on_hourly_limit: RateLimitDecider | None = None,
        commit_progress: ProgressCommitter | None = None,
        on_status: StatusCallback | None = None,
        on_countdown: Callable[[float], None] | None = None,
    ) -> None:
        self.actuator = actuator
        self.config = config or YokeConfig()
        cfg = self.config
        self.model_selector = model_selector or ModelSelector(cfg)
        self.rate_limiter = rate_limiter or RateLimiter(
            limits=cfg.call_limits(), window_seconds=cfg.rate_limit_window_seconds
        )
        self.hourly_limiter = hourly_limiter or HourlyRateLimiter(
            cfg.max_calls_per_hour, tick_seconds=cfg.rate_limit_countdown_tick_seconds
        )
        self.fallback = fallback or RateLimitFallback(cfg.preferred_model_for_reasoning)
        self.exit_detector = exit_detector or ExitDetector(
            task_list=task_list,
            max_consecutive_failures=cfg.max_consecutive_failures,
            max_consecutive_test_loops=cfg.max_consecutive_test_loops,
            max_consecutive_done_signals=cfg.max_consecutive_done_signals,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            no_progress_threshold=cfg.no_progress_threshold,
            same_signal_threshold=cfg.same_signal_threshold,
            half_open_threshold=cfg.half_open_threshold,
        )
        self.recovery = recovery or RecoveryManager(cfg.max_recovery_attempts)
        self.progress = progress or ProgressTracker()
        self.task_list = task_list
        self._decide = decide_on_hourly_limit or _exit_on_limit
        self._commit_progress = commit_progress
        self._on_status = on_status
        self._on_countdown = on_countdown

        # Session state
        self.running = False
        self.loop_count = 0
        self.goal: str | None = None
        self.current_task: str | None = None
        self.current_model: ModelId | None = None
        self.phase = SessionPhase.IDLE
        self.stop_reason: StopReason | None = None
        self.message = "Idle"
        self._applied_model: ModelId | None = None
        self._model_override: ModelId | None = None
        self._recovery_prompt: str | None = None
        self._retry_pending = False
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self, goal: str | None = None) -> LoopStatus:
        """Run a session until it stops; return the final status.

        Starting while a session is already running is a no-op.
        """
        if self.running:
            logger.warning("Loop already running")
            return self.status()

        self._begin_session(goal)
        await asyncio.to_thread(self.progress.start_session)
        logger.info("Autonomous loop starting%s", f" (goal: {goal})" if goal else "")
        self._publish("Starting")
        try:
            await self._run()
        except asyncio.CancelledError:
            self._stop("Session cancelled", StopReason.USER_STOPPED)
            raise
        return self.status()

    def stop(self, reason: str = "User stopped") -> None:
        """Request a stop; honoured at the loop's next suspension point."""
        self._stop(reason, StopReason.USER_STOPPED)

    def cancel_rate_limit_wait(self) -> None:
        """Abort a pending hourly-limit countdown, which ends the session."""
        self.hourly_limiter.cancel_wait()

    def status(self) -> LoopStatus:
        guidance = get_stop_guidance(self.stop_reason) if not self.running else None
        return LoopStatus(
            running=self.running,
            loop_count=self.loop_count,
            current_task=self.current_task,
            current_model=self.current_model.value if self.current_model else None,
            circuit_state=self.circuit_breaker.state,
            message=self.message,
            phase=self.phase,
            stop_reason=self.stop_reason,
            guidance=guidance,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _begin_session(self, goal: str | None) -> None:
        self.running = True
        self.phase = SessionPhase.RUNNING
        self.stop_reason = None
        self.loop_count = 0
        self.goal = (goal or "").strip() or None
        self.current_task = None
        self.current_model = None
        self._applied_model = None
        self._model_override = None
        self._recovery_prompt = None
        self._retry_pending = False
        self._stop_event = asyncio.Event()

        self.circuit_breaker.reset("New session started")
        self.recovery.reset()
        self.fallback.reset(self.config.preferred_model_for_reasoning)
        self.hourly_limiter.reset()
        self.exit_detector.reset()

    def _stop(self, reason: str, kind: StopReason, *, completed: bool = False) -> None:
        """The single exit path: every stop, internal or external, lands here."""
        if not self.running:
            return
        self.running = False
        self.stop_reason = kind
        self.phase = SessionPhase.COMPLETED if completed else SessionPhase.STOPPED
        self.message = reason
        self._stop_event.set()
        self.hourly_limiter.cancel_wait()
        logger.info("Loop stopped: %s (%s)", reason, self.progress.summary())
        self._publish(reason)

    def _publish(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        if self._on_status is None:
            return
        try:
            self._on_status(self.status())
        except Exception:
            logger.warning("Status callback failed", exc_info=True)

    async def _sleep(self, seconds: float) -> None:
        await sleep_unless(self._stop_event, seconds)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while self.running:
            retry = await self._iteration()
            if not self.running:
                break
            if retry:
                continue
            await self._sleep(self.config.loop_interval_seconds)

    async def _iteration(self) -> bool:
        """Run one loop; return True to retry the same loop number at once."""
        if self._retry_pending:
            self._retry_pending = False
        else:
            self.loop_count += 1
        n = self.loop_count
        logger.info("=== Loop #%d ===", n)
        self._publish(f"Loop {n}")

        if not self.circuit_breaker.can_execute():
            self._stop(f"Circuit breaker opened: {self.circuit_breaker.reason}", StopReason.CIRCUIT_OPEN)
            return False

        if not self.hourly_limiter.can_make_call():
            decision = await self.hourly_limiter.handle_limit_reached(
                self._decide, stop=self._stop_event, on_tick=self._countdown
            )
            if not self.running:
                return False
            if decision == "exit":
                self._stop("Hourly rate limit reached - operator chose to exit", StopReason.HOURLY_LIMIT_EXIT)
                return False

        if n > self.config.max_loops:
            self._stop(f"Max loops reached ({self.config.max_loops})", StopReason.MAX_LOOPS)
            return False

        task = self._resolve_task()
        if task is None:
            self._stop("All tasks completed", StopReason.TASKS_COMPLETED, completed=True)
            return False
        self.current_task = task

        if not self._select_model(task):
            return False

        started = time.monotonic()
        execution = await self._execute(task)
        if not self.running:
            return False
        if not self._inspect(n, execution):
            return False

        record = await asyncio.to_thread(
            self.progress.record_loop,
            n,
            response=execution.response,
            has_errors=not execution.success,
            task_completed=self._task_ticked(task),
            model_used=self.current_model.value if self.current_model else None,
            duration_seconds=time.monotonic() - started,
        )
        can_continue = self.circuit_breaker.record_result(
            LoopResult(
                loop_number=n,
                files_changed=record.files_changed,
                has_errors=record.has_errors,
                response_length=record.response_length,
                response_hash=record.response_hash if execution.response else None,
            )
        )
        if not can_continue:
            return self._attempt_recovery()
        if record.files_changed > 0:
            self.recovery.reset()
        self._publish(self.circuit_breaker.status_message())

        if self.config.auto_git_commit and n % self.config.commit_every_loops == 0:
            await self._commit(n)
        return False

    # ------------------------------------------------------------------
    # Iteration steps
    # ------------------------------------------------------------------

    def _resolve_task(self) -> str | None:
        """Next open checklist item, else the goal on loop 1, else nothing."""
        if self.task_list is not None:
            content = self.task_list.read()
            if content is not None:
                item = next_task(content)
                if item:
                    return item
                if parse_checklist(content):
                    logger.info("All tasks in %s are complete", self.task_list.path.name)
                    return None
        if self.goal and self.loop_count == 1:
            return self.goal
        return None

    def _task_ticked(self, task: str) -> bool:
        """True when *task* is a checklist item that is now marked done."""
        if self.task_list is None:
            return False
        return any(
            item.text == task and item.status == "done"
            for item in parse_checklist(self.task_list.read())
        )

    def _excluded_models(self) -> set[ModelId]:
        self.fallback.clear_all_if_due(self.config.rate_limit_window_seconds)
        self.fallback.clear_expired(self.config.rate_limit_window_seconds)
        return self.rate_limiter.get_unavailable() | self.fallback.exhausted

    def _select_model(self, task: str) -> bool:
        """Choose this loop's model; stop the session when none is usable."""
        excluded = self._excluded_models()
        model: ModelId | None = None
        reasoning = ""

        override, self._model_override = self._model_override, None
        if override is not None and override not in excluded:
            model, reasoning = override, "recovery"
        elif self.config.auto_switch_models:
            selection = self.model_selector.select_for_task(task, excluded)
            if selection is not None:
                model, reasoning = selection.model_id, selection.reasoning
        else:
            current = self.current_model or self.fallback.current_model
            if current not in excluded:
                model = current
            else:
                model = next((m for m in FALLBACK_ORDER if m not in excluded), None)
            reasoning = "fixed model"

        if model is None:
            self._stop("All models rate limited. Try again later.", StopReason.MODELS_EXHAUSTED)
            return False

        if model != self.current_model:
            if self.current_model is not None:
                self.progress.record_model_switch()
                logger.info(
                    "Model switch: %s -> %s (%s)",
                    model_label(self.current_model),
                    model_label(model),
                    reasoning,
                )
            else:
                logger.info("Model: %s (%s, %s)", model_label(model), classify(task).value, reasoning)
            self.current_model = model
        self.fallback.set_current_model(model)
        return True

    async def _ensure_connected(self) -> bool:
        try:
            if self.actuator.is_connected():
                return True
            logger.info("Connecting to the assistant...")
            return bool(await self.actuator.connect())
        except Exception as exc:
            logger.error("Actuator connect failed: %s", exc)
            return False

    async def _apply_model(self) -> None:
        if self.current_model is None or self.current_model == self._applied_model:
            return
        if await self.actuator.switch_model(self.current_model):
            self._applied_model = self.current_model
        else:
            logger.warning("Could not select %s in the assistant", model_label(self.current_model))

    def _build_prompt(self, task: str) -> str:
        if self._recovery_prompt:
            prompt, self._recovery_prompt = self._recovery_prompt, None
            return prompt
        return f"{task}\n\n{AUTONOMOUS_NOTE}"

    async def _execute(self, task: str) -> _Execution:
        if not await self._ensure_connected():
            logger.warning("Assistant not reachable; retrying in %.0fs", self.config.reconnect_delay_seconds)
            self._publish("Waiting for the assistant...")
            await self._sleep(self.config.reconnect_delay_seconds)
            return _Execution(success=False, error="Actuator not connected")

        try:
            await self._apply_model()
            prompt = self._build_prompt(task)
            self.progress.record_prompt_sent()
            logger.info("Injecting prompt...")
            if not await self.actuator.inject(prompt):
                return _Execution(success=False, error="Failed to inject prompt")
            if self.current_model is not None:
                self.rate_limiter.record_call(self.current_model)
            self.hourly_limiter.record_call()

            logger.info("Waiting for response...")
            response = await self._await_response()
        except Exception as exc:
            logger.error("Execution error: %s", exc)
            return _Execution(success=False, error=str(exc))

        if response is None:
            if not self.running:
                return _Execution(success=False, error="Stopped")
            return _Execution(success=False, error="Response timed out")
        if not response.strip():
            return _Execution(success=False, error="Empty response")

        await self._click_acceptance()
        if self.fallback.is_rate_limited(response):
            return _Execution(success=False, response=response, error="Rate limited", rate_limited=True)
        return _Execution(success=True, response=response)

    async def _await_response(self) -> str | None:
        """Wait for the reply, the execution timeout, or a stop request."""
        timeout = self.config.execution_timeout_seconds
        reply = asyncio.ensure_future(self.actuator.wait_for_response(timeout))
        stopped = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {reply, stopped}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for pending in (reply, stopped):
                if not pending.done():
                    pending.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await pending
        if reply in done:
            return reply.result()
        return None

    async def _click_acceptance(self) -> None:
        try:
            await self.actuator.click_pending_acceptance()
        except Exception as exc:
            logger.warning("Clicking accept buttons failed: %s", exc)

    def _inspect(self, n: int, execution: _Execution) -> bool:
        """Apply exit and failure rules to the round trip; False once stopped."""
        if execution.rate_limited:
            logger.warning("Rate limit detected, switching model")
            self.progress.record_model_switch()
            replacement = self.fallback.next_model()
            if replacement is None:
                self._stop("All models rate limited. Try again later.", StopReason.MODELS_EXHAUSTED)
                return False
            self._model_override = replacement
            return True

        if not execution.success:
            logger.warning("Loop %d failed: %s", n, execution.error)
            return self._apply_exit(self.exit_detector.report_failure())

        check = self.exit_detector.check_response(execution.response)
        self.exit_detector.record_loop(n, execution.response)
        if not self._apply_exit(check):
            return False
        self.exit_detector.report_success()
        return self._apply_exit(self.exit_detector.should_exit(n))

    def _apply_exit(self, check: ExitCheck) -> bool:
        if not check.should_exit:
            return True
        reason = check.reason or "Exit signal detected"
        logger.info("Exit signal: %s (confidence %.2f)", reason, check.confidence)
        if check.kind == "failures":
            kind = StopReason.CONSECUTIVE_FAILURES
        elif check.kind == "task_list":
            kind = StopReason.TASKS_COMPLETED
        else:
            kind = StopReason.EXIT_SIGNAL
        self._stop(reason, kind, completed=check.signals_completion)
        return False

    def _attempt_recovery(self) -> bool:
        action = self.recovery.get_next_recovery_action()
        if action is None:
            self._stop(self.circuit_breaker.reason or "Circuit breaker opened", StopReason.CIRCUIT_OPEN)
            return False
        logger.info("Attempting recovery: %s", action.description)
        if action.model_switch is not None:
            self._model_override = action.model_switch
        if action.prompt_modifier:
            self._recovery_prompt = action.prompt_modifier
        self.circuit_breaker.reset("Recovery attempt")
        self._retry_pending = True
        self._publish(f"Recovery: {action.description}")
        return True

    async def _commit(self, n: int) -> None:
        if self._commit_progress is None:
            return
        try:
            await self._commit_progress(n, self.current_task)
        except Exception as exc:
            logger.warning("Progress commit failed at loop %d: %s", n, exc)

    def _countdown(self, remaining: float) -> None:
        if self._on_countdown is not None:
            self._on_countdown(remaining)
        self._publish(f"Rate limited: resuming in {int(remaining // 60)}m {int(remaining % 60)}s")


def git_committer(workspace: str | Path) -> ProgressCommitter:
    """Return a committer that checkpoints *workspace* with ``git commit``."""
    root = Path(workspace)

    async def commit(loop_number: int, task: str | None) -> str | None:
        message = generate_commit_message(loop_number, task)
        return await asyncio.to_thread(commit_all, root, message)

    return commit


def build_orchestrator(
    workspace: str | Path,
    actuator: Actuator,
    config: YokeConfig | None = None,
    *,
    clock: Callable[[], float] = time.time,
    changed_files: ChangedFilesProbe | None = None,
    decide_on_hourly_limit: RateLimitDecider | None = None,
    on_status: StatusCallback | None = None,
    on_countdown: Callable[[float], None] | None = None,
) -> LoopOrchestrator:
    """Wire a session for *workspace* with persisted per-workspace state."""
    root = Path(workspace)
    cfg = config or YokeConfig()
    task_list = TaskList(root / cfg.task_list_file)
    return LoopOrchestrator(
        actuator,
        config=cfg,
        rate_limiter=RateLimiter(
            root, limits=cfg.call_limits(), window_seconds=cfg.rate_limit_window_seconds, clock=clock
        ),
        hourly_limiter=HourlyRateLimiter(
            cfg.max_calls_per_hour, tick_seconds=cfg.rate_limit_countdown_tick_seconds, clock=clock
        ),
        fallback=RateLimitFallback(cfg.preferred_model_for_reasoning, clock=clock),
        exit_detector=ExitDetector(
            root,
            task_list=task_list,
            max_consecutive_failures=cfg.max_consecutive_failures,
            max_consecutive_test_loops=cfg.max_consecutive_test_loops,
            max_consecutive_done_signals=cfg.max_consecutive_done_signals,
        ),
        progress=ProgressTracker(root, changed_files=changed_files, clock=clock),
        task_list=task_list,
        decide_on_hourly_limit=decide_on_hourly_limit,
        commit_progress=git_committer(root),
        on_status=on_status,
        on_countdown=on_countdown,
    )
