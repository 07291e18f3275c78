"""Per-loop progress records and session counters."""

from __future__ import annotations

import hashlib
import logging
import time
from collections import deque
from collections.abc import Callable
from pathlib import Path

from yoke.git_tools import GitError, count_changed_files, is_repo, working_tree_snapshot
from yoke.schemas import LoopProgress, SessionStats

logger = logging.getLogger(__name__)

HISTORY_SIZE = 20
STAGNATION_WINDOW = 3

ChangedFilesProbe = Callable[[], int]


def hash_response(text: str | None) -> str:
    """Stable short digest used to spot repeated replies."""
    return hashlib.sha256((text or "").encode("utf-8", errors="replace")).hexdigest()[:16]


class ProgressTracker:
    """Keeps the last :data:`HISTORY_SIZE` loop records and session stats.

    Files changed per loop come from *changed_files* when given; otherwise
    from the delta between git working-tree snapshots of *workspace*.
    Without either, every loop reports zero changes.
    """

    def __init__(
        self,
        workspace: str | Path | None = None,
        *,
        changed_files: ChangedFilesProbe | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.workspace = Path(workspace) if workspace is not None else None
        self._probe = changed_files
        self._clock = clock
        self._history: deque[LoopProgress] = deque(maxlen=HISTORY_SIZE)
        self._stats = SessionStats()
        self._snapshot: dict[str, str] | None = None
        self._git_enabled = False

    def start_session(self) -> None:
        self._history.clear()
        self._stats = SessionStats(start_time=self._clock())
        self._snapshot = None
        self._git_enabled = self._probe is None and self.workspace is not None and is_repo(self.workspace)
        if self._git_enabled:
            self._snapshot = self._take_snapshot()
        logger.info("Session started")

    def _take_snapshot(self) -> dict[str, str] | None:
        assert self.workspace is not None
        try:
            return working_tree_snapshot(self.workspace)
        except GitError as exc:
            logger.warning("Could not snapshot working tree: %s", exc)
            return None

    def files_changed(self) -> int:
        """Count files changed since the previous call (or session start)."""
        if self._probe is not None:
            try:
                return max(0, int(self._probe()))
            except Exception:
                logger.warning("Changed-files probe failed", exc_info=True)
                return 0
        if not self._git_enabled:
            return 0
        current = self._take_snapshot()
        if current is None:
            return 0
        previous = self._snapshot or {}
        self._snapshot = current
        return count_changed_files(previous, current)

    def record_loop(
        self,
        loop_number: int,
        *,
        response: str | None = None,
        has_errors: bool = False,
        task_completed: bool = False,
        model_used: str | None = None,
        duration_seconds: float = 0.0,
    ) -> LoopProgress:
        """Measure file changes and append a record for *loop_number*."""
        changed = self.files_changed()
        record = LoopProgress(
            loop_number=loop_number,
            timestamp=self._clock(),
            files_changed=changed,
            response_length=len(response or ""),
            response_hash=hash_response(response),
            has_errors=has_errors,
            task_completed=task_completed,
            model_used=model_used or "unknown",
            duration_seconds=duration_seconds,
        )
        self._history.append(record)
        self._stats.loop_count += 1
        if task_completed:
            self._stats.tasks_completed += 1
        logger.info(
            "Loop %d: %d files, %d chars", loop_number, changed, record.response_length
        )
        return record

    def record_prompt_sent(self) -> None:
        self._stats.prompts_sent += 1

    def record_model_switch(self) -> None:
        self._stats.model_switches += 1

    @property
    def stats(self) -> SessionStats:
        return self._stats.model_copy()

    @property
    def history(self) -> list[LoopProgress]:
        return list(self._history)

    def duration_minutes(self) -> int:
        if self._stats.start_time is None:
            return 0
        return int((self._clock() - self._stats.start_time) // 60)

    def is_stagnating(self) -> bool:
        """True when the last three loops changed nothing or all replied the same."""
        if len(self._history) < STAGNATION_WINDOW:
            return False
        recent = list(self._history)[-STAGNATION_WINDOW:]
        no_progress = all(p.files_changed == 0 for p in recent)
        same_response = all(p.response_hash == recent[0].response_hash for p in recent)
        return no_progress or same_response

    def summary(self) -> str:
        s = self._stats
        return f"{s.loop_count} loops, {s.prompts_sent} prompts, {self.duration_minutes()}m"
