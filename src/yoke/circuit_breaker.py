"""Progress-stagnation circuit breaker.

CLOSED -> HALF_OPEN after ``half_open_threshold`` loops without file changes;
HALF_OPEN -> CLOSED as soon as progress is seen; CLOSED/HALF_OPEN -> OPEN when
no-progress reaches ``no_progress_threshold`` or the duplicate/error counter
reaches ``same_signal_threshold``. OPEN is sticky until :meth:`reset`.
"""

from __future__ import annotations

import logging
from collections import deque

from yoke.schemas import CircuitBreakerState, CircuitState, LoopResult

logger = logging.getLogger(__name__)

NO_PROGRESS_THRESHOLD = 3
SAME_SIGNAL_THRESHOLD = 5
HALF_OPEN_THRESHOLD = 2
HASH_HISTORY_SIZE = 5

SIGNAL_DUPLICATE = "duplicate_response"
SIGNAL_ERROR = "execution_error"


class CircuitBreaker:
    """Halts runaway loops that burn calls without changing any file."""

    def __init__(
        self,
        *,
        no_progress_threshold: int = NO_PROGRESS_THRESHOLD,
        same_signal_threshold: int = SAME_SIGNAL_THRESHOLD,
        half_open_threshold: int = HALF_OPEN_THRESHOLD,
    ) -> None:
        self.no_progress_threshold = no_progress_threshold
        self.same_signal_threshold = same_signal_threshold
        self.half_open_threshold = half_open_threshold
        self._state = CircuitBreakerState()
        self._hashes: deque[str] = deque(maxlen=HASH_HISTORY_SIZE)
        logger.debug("Circuit breaker initialized (CLOSED)")

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def reason(self) -> str:
        return self._state.reason

    def full_state(self) -> CircuitBreakerState:
        """Return a copy of every counter for display."""
        return self._state.model_copy()

    def can_execute(self) -> bool:
        return self._state.state != CircuitState.OPEN

    def record_result(self, result: LoopResult) -> bool:
        """Fold one iteration into the counters; return False once OPEN."""
        s = self._state
        previous = s.state
        has_progress = result.files_changed > 0

        if has_progress:
            s.consecutive_no_progress = 0
            s.last_progress_loop = result.loop_number
            logger.info("Progress detected: %d files changed", result.files_changed)
        else:
            s.consecutive_no_progress += 1
            logger.warning("No progress: %d consecutive loops", s.consecutive_no_progress)

        # Duplicate replies and execution errors share one counter; last_signal
        # records which of the two bumped it.
        if result.response_hash:
            if result.response_hash in self._hashes:
                s.consecutive_same_signal += 1
                s.last_signal = SIGNAL_DUPLICATE
                logger.warning("Duplicate response: %d times", s.consecutive_same_signal)
            self._hashes.append(result.response_hash)
        if result.has_errors:
            s.consecutive_same_signal += 1
            s.last_signal = SIGNAL_ERROR
            logger.warning("Execution error: %d consecutive signals", s.consecutive_same_signal)

        s.current_loop = result.loop_number
        self._update_state(has_progress)

        if s.state != previous:
            logger.info("Circuit: %s -> %s", previous.value, s.state.value)
        return s.state != CircuitState.OPEN

    def _update_state(self, has_progress: bool) -> None:
        s = self._state
        if s.state == CircuitState.CLOSED:
            if s.consecutive_no_progress >= self.no_progress_threshold:
                self._open(f"No progress in {s.consecutive_no_progress} consecutive loops")
            elif s.consecutive_same_signal >= self.same_signal_threshold:
                self._open(self._same_signal_reason())
            elif s.consecutive_no_progress >= self.half_open_threshold:
                s.state = CircuitState.HALF_OPEN
                s.reason = f"Monitoring: {s.consecutive_no_progress} loops without progress"
        elif s.state == CircuitState.HALF_OPEN:
            if has_progress:
                s.state = CircuitState.CLOSED
                s.reason = "Progress detected, circuit recovered"
                logger.info("Circuit recovered to CLOSED")
            elif s.consecutive_no_progress >= self.no_progress_threshold:
                self._open(f"No recovery after {s.consecutive_no_progress} loops")
            elif s.consecutive_same_signal >= self.same_signal_threshold:
                self._open(self._same_signal_reason())
        # OPEN stays open until reset().

    def _same_signal_reason(self) -> str:
        s = self._state
        if s.last_signal == SIGNAL_DUPLICATE:
            return f"Same response repeated {s.consecutive_same_signal} times"
        return f"Execution errors repeated {s.consecutive_same_signal} times"

    def _open(self, reason: str) -> None:
        s = self._state
        s.state = CircuitState.OPEN
        s.reason = reason
        s.total_opens += 1
        logger.error("CIRCUIT BREAKER OPENED: %s", reason)

    def reset(self, reason: str = "Manual reset") -> None:
        """Close the circuit and clear every counter except ``total_opens``."""
        total_opens = self._state.total_opens
        self._state = CircuitBreakerState(reason=reason, total_opens=total_opens)
        self._hashes.clear()
        logger.info("Circuit breaker reset: %s", reason)

    def status_message(self) -> str:
        s = self._state
        if s.state == CircuitState.CLOSED:
            return "Running normally"
        if s.state == CircuitState.HALF_OPEN:
            return f"Monitoring ({s.consecutive_no_progress} loops no progress)"
        return f"Stopped: {s.reason}"
