"""Scenario tests for the autonomous loop, driven through a scripted actuator."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from yoke.actuator import Actuator
from yoke.config import YokeConfig
from yoke.models import FALLBACK_ORDER
from yoke.orchestrator import AUTONOMOUS_NOTE, LoopOrchestrator, build_orchestrator
from yoke.progress import ProgressTracker
from yoke.rate_limiter import HourlyRateLimiter
from yoke.recovery import RECOVERY_ACTIONS, RecoveryStrategy
from yoke.schemas import LoopStatus, ModelId, SessionPhase, StopReason
from yoke.task_list import TaskList


def _run(coro: Any) -> Any:
    return asyncio.run(coro)


class FakeActuator(Actuator):
    """Replies from a script, then with numbered filler replies."""

    name = "fake"

    def __init__(
        self,
        responses: list[str] | None = None,
        *,
        connected: bool = True,
        inject_ok: bool = True,
        hang: bool = False,
        on_inject: Callable[[str], None] | None = None,
    ) -> None:
        self.responses = list(responses or [])
        self.connected = connected
        self.inject_ok = inject_ok
        self.hang = hang
        self.on_inject = on_inject
        self.prompts: list[str] = []
        self.models: list[ModelId] = []
        self.clicks = 0
        self.injected = asyncio.Event()

    async def connect(self) -> bool:
        return self.connected

    def is_connected(self) -> bool:
        return self.connected

    async def inject(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        self.injected.set()
        if self.on_inject is not None:
            self.on_inject(prompt)
        return self.inject_ok

    async def wait_for_response(self, timeout_seconds: float) -> str:
        if self.hang:
            await asyncio.sleep(3600)
        if self.responses:
            return self.responses.pop(0)
        return f"Reply {len(self.prompts)}"

    async def switch_model(self, model_id: ModelId) -> bool:
        self.models.append(model_id)
        return True

    async def click_pending_acceptance(self) -> int:
        self.clicks += 1
        return 0


def _plan(tmp_path: Path, content: str) -> TaskList:
    path = tmp_path / "@fix_plan.md"
    path.write_text(content, encoding="utf-8")
    return TaskList(path)


def _orchestrator(
    actuator: FakeActuator,
    task_list: TaskList | None = None,
    *,
    files_changed: int = 1,
    on_status: Callable[[LoopStatus], None] | None = None,
    **overrides: Any,
) -> LoopOrchestrator:
    config = YokeConfig(loop_interval_seconds=0, reconnect_delay_seconds=0, **overrides)
    return LoopOrchestrator(
        actuator,
        config=config,
        progress=ProgressTracker(changed_files=lambda: files_changed),
        task_list=task_list,
        on_status=on_status,
    )


class TestStopConditions:
    def test_repeated_identical_replies_stop_the_session(self, tmp_path: Path):
        reply = "All tests passed. All tests passed. All tests passed."
        actuator = FakeActuator([reply] * 5)
        orch = _orchestrator(actuator, _plan(tmp_path, "- [ ] write tests\n"), files_changed=0)

        status = _run(orch.start())

        assert status.running is False
        assert status.loop_count == 3
        assert status.phase == SessionPhase.STOPPED
        assert status.stop_reason == StopReason.EXIT_SIGNAL
        assert status.message == "Response stagnation detected"

    def test_finished_task_list_completes_without_prompting(self, tmp_path: Path):
        actuator = FakeActuator()
        orch = _orchestrator(actuator, _plan(tmp_path, "- [x] a\n- [x] b\n"))

        status = _run(orch.start("ignored goal"))

        assert status.phase == SessionPhase.COMPLETED
        assert status.stop_reason == StopReason.TASKS_COMPLETED
        assert actuator.prompts == []

    def test_checklist_is_worked_through_in_order(self, tmp_path: Path):
        task_list = _plan(tmp_path, "- [ ] a\n- [ ] b\n")

        def tick(prompt: str) -> None:
            text = task_list.path.read_text(encoding="utf-8")
            task_list.path.write_text(text.replace("- [ ]", "- [x]", 1), encoding="utf-8")

        actuator = FakeActuator(on_inject=tick)
        orch = _orchestrator(actuator, task_list)
        status = _run(orch.start())

        assert actuator.prompts == [f"a\n\n{AUTONOMOUS_NOTE}", f"b\n\n{AUTONOMOUS_NOTE}"]
        assert status.phase == SessionPhase.COMPLETED
        assert status.stop_reason == StopReason.TASKS_COMPLETED
        assert actuator.clicks == 2
        assert orch.progress.stats.tasks_completed == 2

    def test_goal_is_used_on_the_first_loop_only(self):
        actuator = FakeActuator()
        status = _run(_orchestrator(actuator).start("Write the changelog"))

        assert actuator.prompts == [f"Write the changelog\n\n{AUTONOMOUS_NOTE}"]
        assert status.loop_count == 2
        assert status.stop_reason == StopReason.TASKS_COMPLETED

    def test_max_loops(self, tmp_path: Path):
        actuator = FakeActuator()
        orch = _orchestrator(actuator, _plan(tmp_path, "- [ ] write docs\n"), max_loops=2)

        status = _run(orch.start())

        assert status.stop_reason == StopReason.MAX_LOOPS
        assert status.phase == SessionPhase.STOPPED
        assert len(actuator.prompts) == 2
        assert status.guidance is not None
        assert status.guidance["code"] == "max_loops"

    def test_completion_phrase_completes_session(self, tmp_path: Path):
        actuator = FakeActuator(["Implementation complete, nothing left to do."])
        orch = _orchestrator(actuator, _plan(tmp_path, "- [ ] write docs\n"))

        status = _run(orch.start())

        assert status.phase == SessionPhase.COMPLETED
        assert status.stop_reason == StopReason.EXIT_SIGNAL
        assert status.loop_count == 1

    def test_inject_failures_stop_after_threshold(self, tmp_path: Path):
        actuator = FakeActuator(inject_ok=False)
        orch = _orchestrator(actuator, _plan(tmp_path, "- [ ] write docs\n"))

        status = _run(orch.start())

        assert status.stop_reason == StopReason.CONSECUTIVE_FAILURES
        assert status.loop_count == 3
        assert len(actuator.prompts) == 3

    def test_disconnected_assistant_counts_as_failure(self, tmp_path: Path):
        actuator = FakeActuator(connected=False)
        orch = _orchestrator(actuator, _plan(tmp_path, "- [ ] write docs\n"))

        status = _run(orch.start())

        assert status.stop_reason == StopReason.CONSECUTIVE_FAILURES
        assert actuator.prompts == []

    def test_hung_reply_hits_the_execution_timeout(self, tmp_path: Path):
        actuator = FakeActuator(hang=True)
        orch = _orchestrator(
            actuator, _plan(tmp_path, "- [ ] write docs\n"), execution_timeout_minutes=0.001
        )

        status = _run(orch.start())

        assert status.stop_reason == StopReason.CONSECUTIVE_FAILURES
        assert status.loop_count == 3
        assert len(actuator.prompts) == 3
        assert orch.exit_detector.history.consecutive_failures == 3

    def test_hourly_limit_exit(self, tmp_path: Path):
        actuator = FakeActuator()
        decisions = []

        async def decide(status):
            decisions.append(status)
            return "exit"

        orch = LoopOrchestrator(
            actuator,
            config=YokeConfig(loop_interval_seconds=0, max_calls_per_hour=1),
            progress=ProgressTracker(changed_files=lambda: 1),
            task_list=_plan(tmp_path, "- [ ] write docs\n"),
            decide_on_hourly_limit=decide,
        )

        status = _run(orch.start())

        assert status.stop_reason == StopReason.HOURLY_LIMIT_EXIT
        assert len(actuator.prompts) == 1
        assert len(decisions) == 1
        assert decisions[0].calls_this_hour == 1

    def test_hourly_limit_wait_resumes_with_cleared_counters(self, tmp_path: Path, clock):
        actuator = FakeActuator()
        statuses: list[LoopStatus] = []
        decisions = []

        async def decide(status):
            decisions.append(status)
            return "wait"

        hourly = HourlyRateLimiter(2, tick_seconds=0.01, clock=clock)
        orch = LoopOrchestrator(
            actuator,
            config=YokeConfig(loop_interval_seconds=0, max_calls_per_hour=2, max_loops=3),
            hourly_limiter=hourly,
            progress=ProgressTracker(changed_files=lambda: 1),
            task_list=_plan(tmp_path, "- [ ] write docs\n"),
            decide_on_hourly_limit=decide,
            on_status=statuses.append,
            on_countdown=clock.advance,
        )

        status = _run(orch.start())

        assert status.stop_reason == StopReason.MAX_LOOPS
        assert len(actuator.prompts) == 3
        assert len(decisions) == 1
        assert decisions[0].calls_this_hour == 2
        assert hourly.calls_this_hour == 1
        assert hourly.is_limited is False
        assert any(s.message.startswith("Rate limited: resuming in") for s in statuses)


class TestModelHandling:
    def test_rate_limited_reply_switches_to_next_model(self, tmp_path: Path):
        actuator = FakeActuator(["Error: rate limit exceeded", "Fixed the race."])
        orch = _orchestrator(
            actuator, _plan(tmp_path, "- [ ] Debug the login race condition\n"), max_loops=2
        )

        status = _run(orch.start())

        assert actuator.models == [ModelId.CLAUDE_OPUS_THINKING, ModelId.CLAUDE_SONNET_THINKING]
        assert orch.fallback.exhausted == {ModelId.CLAUDE_OPUS_THINKING}
        assert orch.progress.stats.model_switches == 2
        assert status.current_model == ModelId.CLAUDE_SONNET_THINKING.value
        assert status.stop_reason == StopReason.MAX_LOOPS

    def test_all_models_exhausted(self, tmp_path: Path):
        replies = [f"Rate limit exceeded ({i})" for i in range(len(FALLBACK_ORDER))]
        actuator = FakeActuator(replies)
        orch = _orchestrator(
            actuator,
            _plan(tmp_path, "- [ ] Debug the login race condition\n"),
            same_signal_threshold=50,
        )

        status = _run(orch.start())

        assert status.stop_reason == StopReason.MODELS_EXHAUSTED
        assert actuator.models == list(FALLBACK_ORDER)
        assert orch.exit_detector.history.consecutive_failures == 0

    def test_fixed_model_when_auto_switch_disabled(self, tmp_path: Path):
        actuator = FakeActuator()
        orch = _orchestrator(
            actuator,
            _plan(tmp_path, "- [ ] style the navbar\n"),
            auto_switch_models=False,
            max_loops=2,
        )

        _run(orch.start())

        assert actuator.models == [ModelId.CLAUDE_OPUS_THINKING]


class TestRecovery:
    def test_recovery_retries_same_loop_then_opens_circuit(self, tmp_path: Path):
        statuses: list[LoopStatus] = []
        actuator = FakeActuator()
        orch = _orchestrator(
            actuator,
            _plan(tmp_path, "- [ ] Polish the wording\n"),
            files_changed=0,
            on_status=statuses.append,
        )

        status = _run(orch.start())

        prompts = {a.strategy: a.prompt_modifier for a in RECOVERY_ACTIONS}
        assert status.stop_reason == StopReason.CIRCUIT_OPEN
        assert status.loop_count == 9
        assert len(actuator.prompts) == 12
        assert actuator.prompts[6] == prompts[RecoveryStrategy.USE_WEB_SEARCH]
        assert actuator.prompts[9] == prompts[RecoveryStrategy.BREAK_DOWN_PROBLEM]
        assert actuator.models[:2] == [ModelId.CLAUDE_OPUS_THINKING, ModelId.CLAUDE_SONNET_THINKING]

        loop_messages = [s.message for s in statuses if s.message.startswith("Loop ")]
        assert loop_messages.count("Loop 3") == 2
        assert loop_messages.count("Loop 4") == 1
        assert orch.circuit_breaker.full_state().total_opens == 4

    def test_progress_resets_the_recovery_ladder(self, tmp_path: Path):
        changes = iter([0, 0, 0, 4])
        actuator = FakeActuator()
        orch = LoopOrchestrator(
            actuator,
            config=YokeConfig(loop_interval_seconds=0, max_loops=6),
            progress=ProgressTracker(changed_files=lambda: next(changes, 0)),
            task_list=_plan(tmp_path, "- [ ] Polish the wording\n"),
        )

        status = _run(orch.start())

        web_search = next(a for a in RECOVERY_ACTIONS if a.strategy == RecoveryStrategy.USE_WEB_SEARCH)
        assert status.stop_reason == StopReason.MAX_LOOPS
        assert len(actuator.prompts) == 8
        assert web_search.prompt_modifier not in actuator.prompts
        assert actuator.models == [
            ModelId.CLAUDE_OPUS_THINKING,
            ModelId.CLAUDE_SONNET_THINKING,
            ModelId.CLAUDE_OPUS_THINKING,
            ModelId.CLAUDE_SONNET_THINKING,
        ]
        assert orch.recovery.attempt_count == 1
        assert orch.circuit_breaker.full_state().total_opens == 2


class TestLifecycle:
    def test_stop_request_interrupts_response_wait(self, tmp_path: Path):
        actuator = FakeActuator(hang=True)
        orch = _orchestrator(actuator, _plan(tmp_path, "- [ ] write docs\n"))

        async def scenario():
            session = asyncio.create_task(orch.start())
            await actuator.injected.wait()
            again = await orch.start("second session")
            orch.stop("Operator pressed stop")
            final = await asyncio.wait_for(session, timeout=5)
            return again, final

        again, final = _run(scenario())

        assert again.running is True
        assert final.running is False
        assert final.phase == SessionPhase.STOPPED
        assert final.stop_reason == StopReason.USER_STOPPED
        assert final.message == "Operator pressed stop"
        assert len(actuator.prompts) == 1

    def test_status_callback_receives_snapshots(self, tmp_path: Path):
        statuses: list[LoopStatus] = []
        actuator = FakeActuator()
        orch = _orchestrator(
            actuator, _plan(tmp_path, "- [ ] write docs\n"), max_loops=1, on_status=statuses.append
        )

        _run(orch.start())

        assert statuses[0].running is True
        assert statuses[0].message == "Starting"
        assert any(s.current_task == "write docs" for s in statuses)
        assert statuses[-1].running is False
        assert statuses[-1].stop_reason == StopReason.MAX_LOOPS
        assert statuses[-1].guidance is not None

    def test_failing_status_callback_does_not_break_loop(self, tmp_path: Path):
        def broken(status: LoopStatus) -> None:
            raise RuntimeError("ui gone")

        actuator = FakeActuator()
        orch = _orchestrator(
            actuator, _plan(tmp_path, "- [ ] write docs\n"), max_loops=1, on_status=broken
        )

        assert _run(orch.start()).stop_reason == StopReason.MAX_LOOPS

    def test_periodic_commit_is_best_effort(self, tmp_path: Path):
        commits: list[tuple[int, str | None]] = []

        async def commit(loop_number: int, task: str | None) -> None:
            commits.append((loop_number, task))
            if len(commits) == 1:
                raise RuntimeError("git is locked")

        orch = LoopOrchestrator(
            FakeActuator(),
            config=YokeConfig(
                loop_interval_seconds=0,
                max_loops=4,
                auto_git_commit=True,
                commit_every_loops=2,
            ),
            progress=ProgressTracker(changed_files=lambda: 1),
            task_list=_plan(tmp_path, "- [ ] write docs\n"),
            commit_progress=commit,
        )

        status = _run(orch.start())

        assert commits == [(2, "write docs"), (4, "write docs")]
        assert status.stop_reason == StopReason.MAX_LOOPS


def test_build_orchestrator_persists_workspace_state(tmp_path: Path):
    (tmp_path / "@fix_plan.md").write_text("- [ ] write docs\n", encoding="utf-8")
    actuator = FakeActuator(["Running tests: 4 tests passed"])
    orch = build_orchestrator(
        tmp_path,
        actuator,
        YokeConfig(loop_interval_seconds=0, max_loops=1),
        changed_files=lambda: 1,
    )

    status = _run(orch.start())

    assert status.stop_reason == StopReason.MAX_LOOPS
    limits = json.loads((tmp_path / ".yoke" / "rate_limits.json").read_text(encoding="utf-8"))
    assert limits["globalCalls"] == 1
    signals = json.loads((tmp_path / ".yoke" / "exit_signals.json").read_text(encoding="utf-8"))
    assert signals["testOnlyLoops"] == [1]
