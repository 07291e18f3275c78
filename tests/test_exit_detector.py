"""Tests for completion, stagnation and accumulated exit signals."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from yoke.exit_detector import (
    ExitDetector,
    has_completion_indicator,
    has_done_signal,
    is_test_only,
    normalize_response,
)
from yoke.task_list import TaskList


class TestCheckResponse:
    @pytest.mark.parametrize("text", ["", "   ", "\n\t", None])
    def test_empty_input_never_exits(self, text):
        detector = ExitDetector()
        for _ in range(3):
            result = detector.check_response(text)
            assert result.should_exit is False
            assert result.confidence == 0.0

    def test_completion_phrase_exits_immediately(self):
        result = ExitDetector().check_response("Done with the refactor. Nothing left to do!")
        assert result.should_exit is True
        assert result.confidence == 0.9
        assert result.kind == "completion"
        assert result.signals_completion is True

    def test_stagnation_after_two_duplicates(self):
        detector = ExitDetector()
        text = "I updated the parser and will continue with the lexer next."
        assert detector.check_response(text).should_exit is False
        assert detector.check_response(text.upper()).should_exit is False
        result = detector.check_response(f"  {text}  ")
        assert result.should_exit is True
        assert result.confidence == 0.7
        assert result.kind == "stagnation"
        assert result.signals_completion is False

    def test_long_responses_compare_on_prefix(self):
        detector = ExitDetector()
        prefix = "x" * 120
        detector.check_response(prefix + " first tail")
        detector.check_response(prefix + " second tail")
        assert detector.check_response(prefix + " third tail").should_exit is True

    def test_short_distinct_responses_do_not_stagnate(self):
        detector = ExitDetector()
        for text in ("step one", "step two", "step three", "step four"):
            assert detector.check_response(text).should_exit is False


class TestFailures:
    def test_failure_threshold_and_success_reset(self):
        detector = ExitDetector(max_consecutive_failures=3)
        assert detector.report_failure().should_exit is False
        assert detector.report_failure().should_exit is False
        detector.report_success()
        assert detector.history.consecutive_failures == 0

        detector.report_failure()
        detector.report_failure()
        result = detector.report_failure()
        assert result.should_exit is True
        assert result.confidence == 1.0
        assert result.kind == "failures"

    def test_failures_persist_across_instances(self, tmp_path: Path):
        ExitDetector(tmp_path).report_failure()
        ExitDetector(tmp_path).report_failure()
        payload = json.loads((tmp_path / ".yoke" / "exit_signals.json").read_text(encoding="utf-8"))
        assert payload["consecutiveFailures"] == 2
        assert set(payload) == {
            "testOnlyLoops",
            "doneSignals",
            "completionIndicators",
            "consecutiveFailures",
        }


class TestExternalTaskList:
    def test_partial_checklist_is_not_complete(self):
        assert ExitDetector.check_external_task_list_complete("- [x] a\n- [ ] b\n") is False

    def test_all_checked_is_complete(self):
        assert ExitDetector.check_external_task_list_complete("- [x] a\n- [x] b\n") is True

    def test_missing_or_empty_document_is_not_complete(self):
        assert ExitDetector.check_external_task_list_complete(None) is False
        assert ExitDetector.check_external_task_list_complete("# Plan\n\nnothing yet\n") is False


class TestSignalClassifiers:
    def test_test_only_requires_no_feature_work(self):
        assert is_test_only("Running tests... 12 tests passed.") is True
        assert is_test_only("Implemented the parser, then ran pytest.") is False
        assert is_test_only("") is False

    def test_done_signal_must_end_the_reply(self):
        assert has_done_signal("Everything is in place. Done.") is True
        assert has_done_signal("All set!") is True
        assert has_done_signal("Done with step one, moving to step two") is False

    def test_completion_indicator(self):
        assert has_completion_indicator("The branch is ready for review") is True
        assert has_completion_indicator("still working") is False

    def test_normalize_response(self):
        assert normalize_response("  Hello \n\n  WORLD ") == "hello world"
        assert len(normalize_response("a" * 900)) == 500


class TestShouldExit:
    def test_test_saturation(self):
        detector = ExitDetector(max_consecutive_test_loops=3)
        for loop in (1, 2):
            detector.record_loop(loop, "Running tests: all tests passed")
            assert detector.should_exit(loop).should_exit is False
        detector.record_loop(3, "Running tests: all tests passed")
        result = detector.should_exit(3)
        assert result.should_exit is True
        assert result.kind == "test_saturation"
        assert result.signals_completion is True

    def test_test_saturation_ignores_old_loops(self):
        detector = ExitDetector(max_consecutive_test_loops=3)
        for loop in (1, 2, 3):
            detector.record_loop(loop, "Running tests: all tests passed")
        assert detector.should_exit(7).should_exit is False

    def test_consecutive_done_signals(self):
        detector = ExitDetector(max_consecutive_done_signals=2)
        detector.record_loop(4, "Wrote the migration. Finished.")
        assert detector.should_exit(4).should_exit is False
        detector.record_loop(5, "Cleaned up imports. Done!")
        result = detector.should_exit(5)
        assert result.should_exit is True
        assert result.kind == "done_signals"

    def test_completion_indicators_within_five_loops(self):
        detector = ExitDetector()
        detector.record_loop(1, "Everything is ready for review")
        detector.record_loop(4, "All tests passing on CI")
        result = detector.should_exit(5)
        assert result.should_exit is True
        assert result.kind == "completion_indicators"
        assert result.confidence == 0.85

    def test_task_list_completion(self, tmp_path: Path):
        plan = tmp_path / "@fix_plan.md"
        plan.write_text("- [x] one\n- [x] two\n", encoding="utf-8")
        detector = ExitDetector(task_list=TaskList(plan))
        result = detector.should_exit(1)
        assert result.should_exit is True
        assert result.kind == "task_list"

    def test_ring_buffers_are_bounded(self):
        detector = ExitDetector()
        for loop in range(1, 25):
            detector.record_loop(loop, "Running tests: all tests passed")
        assert detector.history.test_only_loops == list(range(15, 25))

    def test_history_survives_restart_and_reset_clears_it(self, tmp_path: Path):
        first = ExitDetector(tmp_path)
        first.record_loop(1, "Running tests: 3 tests passed")
        first.record_loop(2, "Running tests: 3 tests passed")

        second = ExitDetector(tmp_path)
        assert second.history.test_only_loops == [1, 2]

        second.reset()
        assert ExitDetector(tmp_path).history.test_only_loops == []
