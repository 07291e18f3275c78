"""Decide when the autonomous loop has finished (or is going nowhere).

Two layers:

* :meth:`ExitDetector.check_response` looks at a single reply: explicit
  completion phrases exit immediately, and a reply that duplicates recent
  replies is treated as stagnation.
* :meth:`ExitDetector.record_loop` / :meth:`ExitDetector.should_exit`
  accumulate per-loop signals (test-only loops, "done" endings, completion
  indicators, consecutive failures) in a persisted history so a restart does
  not forget them.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass
from pathlib import Path

from yoke.file_io import state_dir
from yoke.patterns import SignalPattern, first_match, literal_table, regex_table
from yoke.schemas import ExitCheck, ExitSignalHistory
from yoke.task_list import TaskList, is_complete

logger = logging.getLogger(__name__)

EXIT_SIGNALS_FILE_NAME = "exit_signals.json"
SIGNAL_HISTORY_SIZE = 10
RECENT_RESPONSES_SIZE = 5
NORMALIZED_LENGTH = 500
SIMILARITY_PREFIX = 100
STAGNATION_DUPLICATES = 2
COMPLETION_CONFIDENCE = 0.9
STAGNATION_CONFIDENCE = 0.7

COMPLETION_PATTERNS: tuple[SignalPattern, ...] = literal_table(
    "completion",
    (
        "all tasks completed",
        "all tasks are completed",
        "all tasks complete",
        "nothing left to do",
        "nothing remaining to do",
        "no more tasks to do",
        "no more work to do",
        "implementation complete",
        "implementation is complete",
        "project is complete",
        "all features implemented",
        "successfully completed all",
        "all items checked",
    ),
)

COMPLETION_INDICATORS: tuple[SignalPattern, ...] = literal_table(
    "indicator",
    (
        "all tasks completed",
        "project is complete",
        "nothing left to do",
        "all items checked",
        "implementation complete",
        "all features implemented",
        "ready for review",
        "all tests passing",
    ),
)

TEST_ACTIVITY_PATTERNS: tuple[SignalPattern, ...] = regex_table(
    "test",
    (
        r"running\s+(unit\s+)?tests?",
        r"npm\s+(run\s+)?test",
        r"jest|vitest|mocha|pytest|rspec",
        r"all\s+tests?\s+pass(ed|ing)?",
        r"\d+\s+tests?\s+(passed|passing)",
        r"test\s+suite",
        r"coverage\s+report",
        r"\u2713.*test|test.*\u2713",
        r"PASS\s+\w+\.test\.",
        r"no\s+changes?\s+(needed|required)",
        r"everything\s+is\s+working",
        r"all\s+good|looks\s+good",
        r"only\s+ran\s+tests",
        r"just\s+running\s+tests",
        r"test\s+execution\s+only",
    ),
)

FEATURE_WORK_PATTERNS: tuple[SignalPattern, ...] = regex_table(
    "feature",
    (
        r"creat(ed?|ing)\s+(new\s+)?file",
        r"modif(ied|ying)\s+\w+",
        r"implement(ed|ing)",
        r"add(ed|ing)\s+(new\s+)?",
        r"fix(ed|ing)\s+(bug|issue|error)",
        r"refactor(ed|ing)",
        r"updat(ed|ing)\s+\w+",
    ),
)

DONE_PATTERNS: tuple[SignalPattern, ...] = regex_table(
    "done",
    tuple(
        rf"\b{re.escape(word)}\b[.!]*\s*$"
        for word in ("done", "finished", "completed", "all set", "nothing more to do")
    ),
)


def normalize_response(text: str) -> str:
    """Lower-case, collapse whitespace and truncate for duplicate comparison."""
    return re.sub(r"\s+", " ", text.lower()).strip()[:NORMALIZED_LENGTH]


def _similar(a: str, b: str) -> bool:
    if a == b:
        return True
    if len(a) > SIMILARITY_PREFIX and len(b) > SIMILARITY_PREFIX:
        return a[:SIMILARITY_PREFIX] == b[:SIMILARITY_PREFIX]
    return False


def is_test_only(text: str | None) -> bool:
    """True when *text* talks about running tests but not about changing code."""
    if not text:
        return False
    has_tests = first_match(TEST_ACTIVITY_PATTERNS, text) is not None
    has_feature_work = first_match(FEATURE_WORK_PATTERNS, text) is not None
    return has_tests and not has_feature_work


def has_done_signal(text: str | None) -> bool:
    """True when *text* ends with a bare "done"-style statement."""
    return first_match(DONE_PATTERNS, (text or "").strip()) is not None


def has_completion_indicator(text: str | None) -> bool:
    return first_match(COMPLETION_INDICATORS, text or "") is not None


@dataclass(frozen=True)
class LoopSignals:
    """Per-loop classification recorded into the signal history."""

    test_only: bool = False
    done_signal: bool = False
    completion_indicator: bool = False


class ExitDetector:
    """Multi-signal completion classifier.

    Parameters
    ----------
    workspace:
        Directory whose ``.yoke/exit_signals.json`` persists the signal
        history. ``None`` keeps the history in memory only.
    task_list:
        Optional external checklist consulted by :meth:`should_exit`.
    """

    def __init__(
        self,
        workspace: str | Path | None = None,
        *,
        task_list: TaskList | None = None,
        max_consecutive_failures: int = 3,
        max_consecutive_test_loops: int = 3,
        max_consecutive_done_signals: int = 2,
    ) -> None:
        self.state_path: Path | None = (
            state_dir(workspace) / EXIT_SIGNALS_FILE_NAME if workspace is not None else None
        )
        self.task_list = task_list
        self.max_consecutive_failures = max_consecutive_failures
        self.max_consecutive_test_loops = max_consecutive_test_loops
        self.max_consecutive_done_signals = max_consecutive_done_signals
        self._history: ExitSignalHistory | None = None
        self._recent: deque[str] = deque(maxlen=RECENT_RESPONSES_SIZE)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def history(self) -> ExitSignalHistory:
        if self._history is None:
            loaded = ExitSignalHistory.load(self.state_path) if self.state_path else None
            self._history = loaded or ExitSignalHistory()
        return self._history

    def _save(self) -> None:
        if self.state_path is None or self._history is None:
            return
        try:
            self._history.save(self.state_path)
        except OSError:
            logger.warning("Failed to save exit signals to %s", self.state_path, exc_info=True)

    # ------------------------------------------------------------------
    # Per-response checks
    # ------------------------------------------------------------------

    def check_response(self, response: str | None) -> ExitCheck:
        """Classify one reply; never raises."""
        if not response or not response.strip():
            return ExitCheck(should_exit=False, confidence=0.0)

        row = first_match(COMPLETION_PATTERNS, response)
        if row is not None:
            logger.info("Exit pattern matched: %r", row.pattern)
            return ExitCheck(
                should_exit=True,
                reason="Completion signal detected in response",
                confidence=COMPLETION_CONFIDENCE,
                kind="completion",
            )

        if self._is_stagnant(response):
            logger.warning("Response stagnation detected")
            return ExitCheck(
                should_exit=True,
                reason="Response stagnation detected",
                confidence=STAGNATION_CONFIDENCE,
                kind="stagnation",
            )

        return ExitCheck(should_exit=False, confidence=0.0)

    def _is_stagnant(self, response: str) -> bool:
        normalized = normalize_response(response)
        duplicates = sum(1 for previous in self._recent if _similar(normalized, previous))
        self._recent.append(normalized)
        return duplicates >= STAGNATION_DUPLICATES

    def report_failure(self) -> ExitCheck:
        """Count a failed iteration; exit once the failure threshold is hit."""
        history = self.history
        history.consecutive_failures += 1
        self._save()
        logger.warning("Failure reported (%d consecutive)", history.consecutive_failures)
        if history.consecutive_failures >= self.max_consecutive_failures:
            return ExitCheck(
                should_exit=True,
                reason=f"{history.consecutive_failures} consecutive failures",
                confidence=1.0,
                kind="failures",
            )
        return ExitCheck(should_exit=False, confidence=0.0)

    def report_success(self) -> None:
        history = self.history
        if history.consecutive_failures > 0:
            logger.info("Success after failures, resetting counter")
            history.consecutive_failures = 0
            self._save()

    @staticmethod
    def check_external_task_list_complete(document: str | None) -> bool:
        """True when *document* has checklist items and all are done."""
        if document is None:
            return False
        return is_complete(document)

    # ------------------------------------------------------------------
    # Accumulated signals
    # ------------------------------------------------------------------

    def record_loop(self, loop_number: int, response: str | None) -> LoopSignals:
        """Classify *response* and append its loop number to the matching buffers."""
        signals = LoopSignals(
            test_only=is_test_only(response),
            done_signal=has_done_signal(response),
            completion_indicator=has_completion_indicator(response),
        )
        history = self.history
        if signals.test_only:
            _push(history.test_only_loops, loop_number)
        if signals.done_signal:
            _push(history.done_signals, loop_number)
        if signals.completion_indicator:
            _push(history.completion_indicators, loop_number)
        self._save()
        return signals

    def should_exit(self, current_loop: int) -> ExitCheck:
        """Evaluate accumulated signals for *current_loop*."""
        history = self.history

        if history.consecutive_failures >= self.max_consecutive_failures:
            return ExitCheck(
                should_exit=True,
                reason=f"{history.consecutive_failures} consecutive failures",
                confidence=1.0,
                kind="failures",
            )

        if self.task_list is not None and self.task_list.is_complete():
            return ExitCheck(
                should_exit=True,
                reason=f"All tasks in {self.task_list.path.name} completed",
                confidence=1.0,
                kind="task_list",
            )

        recent_tests = _within(history.test_only_loops, current_loop, self.max_consecutive_test_loops)
        if recent_tests >= self.max_consecutive_test_loops:
            return ExitCheck(
                should_exit=True,
                reason=f"Feature likely complete ({recent_tests} consecutive test-only loops)",
                confidence=0.8,
                kind="test_saturation",
            )

        recent_done = _within(history.done_signals, current_loop, self.max_consecutive_done_signals)
        if recent_done >= self.max_consecutive_done_signals:
            return ExitCheck(
                should_exit=True,
                reason=f"{recent_done} consecutive done signals",
                confidence=0.8,
                kind="done_signals",
            )

        if _within(history.completion_indicators, current_loop, 5) >= 2:
            return ExitCheck(
                should_exit=True,
                reason="Multiple completion indicators detected",
                confidence=0.85,
                kind="completion_indicators",
            )

        return ExitCheck(should_exit=False, confidence=0.0)

    def reset(self) -> None:
        """Clear both the in-memory window and the persisted history."""
        self._recent.clear()
        self._history = ExitSignalHistory()
        self._save()
        logger.info("Exit detector reset")


def _push(buffer: list[int], loop_number: int) -> None:
    if buffer and buffer[-1] == loop_number:
        return
    buffer.append(loop_number)
    del buffer[:-SIGNAL_HISTORY_SIZE]


def _within(buffer: list[int], current_loop: int, span: int) -> int:
    """Count loop numbers in the last *span* loops ending at *current_loop*."""
    return sum(1 for n in set(buffer) if current_loop - span < n <= current_loop)
