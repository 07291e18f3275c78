"""Pydantic models for structured data throughout the loop."""

from __future__ import annotations

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from yoke.file_io import atomic_write_text, read_text

logger = logging.getLogger(__name__)

_M = TypeVar("_M", bound="_CamelModel")

# ---------------------------------------------------------------------------
# Reference enums
# ---------------------------------------------------------------------------


class ModelId(str, Enum):
    """Models selectable in the assistant's model dropdown."""

    GEMINI_PRO_HIGH = "gemini-3-pro-high"
    GEMINI_PRO_LOW = "gemini-3-pro-low"
    GEMINI_FLASH = "gemini-3-flash"
    CLAUDE_SONNET = "claude-sonnet-4-5"
    CLAUDE_SONNET_THINKING = "claude-sonnet-4-5-thinking"
    CLAUDE_OPUS_THINKING = "claude-opus-4-5-thinking"
    GPT_OSS = "gpt-oss-120b-medium"


class TaskCategory(str, Enum):
    """Kind of work a task description asks for."""

    REASONING = "reasoning"
    FRONTEND = "frontend"
    QUICK = "quick"
    GENERAL = "general"
    BULK = "bulk"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    HALF_OPEN = "HALF_OPEN"
    OPEN = "OPEN"


class SessionPhase(str, Enum):
    """Lifecycle of one autonomous session."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    COMPLETED = "COMPLETED"


class StopReason(str, Enum):
    """Why a session ended."""

    USER_STOPPED = "user_stopped"
    MAX_LOOPS = "max_loops"
    CIRCUIT_OPEN = "circuit_open"
    MODELS_EXHAUSTED = "models_exhausted"
    HOURLY_LIMIT_EXIT = "hourly_limit_exit"
    TASKS_COMPLETED = "tasks_completed"
    EXIT_SIGNAL = "exit_signal"
    CONSECUTIVE_FAILURES = "consecutive_failures"


class _CamelModel(BaseModel):
    """Base for models whose JSON form uses camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def save(self, path: Path) -> None:
        """Persist the model to *path* as camelCase JSON."""
        atomic_write_text(path, self.model_dump_json(by_alias=True, indent=2))

    @classmethod
    def load(cls: type[_M], path: Path) -> _M | None:
        """Load a persisted model, or return ``None`` when absent or invalid."""
        raw = read_text(path)
        if raw is None:
            return None
        if not raw.strip():
            logger.warning("State file is empty; ignoring: %s", path)
            return None
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Could not load state file %s: %s", path, exc)
            return None


# ---------------------------------------------------------------------------
# Detector results
# ---------------------------------------------------------------------------


class ExitCheck(BaseModel):
    """Outcome of an exit-detector query."""

    should_exit: bool = False
    reason: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    # Which detector fired, e.g. "completion", "stagnation", "failures".
    kind: str | None = None

    @property
    def signals_completion(self) -> bool:
        """True when the exit means the work is done rather than stuck."""
        return self.kind in {
            "completion",
            "task_list",
            "test_saturation",
            "done_signals",
            "completion_indicators",
        }


class LoopResult(BaseModel):
    """What the circuit breaker learns about one iteration."""

    loop_number: int
    files_changed: int = 0
    has_errors: bool = False
    response_length: int = 0
    response_hash: str | None = None


class CircuitBreakerState(_CamelModel):
    """Transient circuit breaker counters, reset at every session start."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_no_progress: int = 0
    consecutive_same_signal: int = 0
    last_progress_loop: int = 0
    total_opens: int = 0
    current_loop: int = 0
    reason: str = ""
    # "duplicate_response", "execution_error" or "" -- which signal last bumped
    # consecutive_same_signal.
    last_signal: str = ""


# ---------------------------------------------------------------------------
# Persisted per-workspace state
# ---------------------------------------------------------------------------


class ModelUsage(_CamelModel):
    """Call accounting for one model inside its rolling window."""

    call_count: int = 0
    last_reset: float = Field(default_factory=time.time)
    is_limited: bool = False


class RateLimitState(_CamelModel):
    """Persisted per-model rate-limit counters - ``.yoke/rate_limits.json``."""

    models: dict[str, ModelUsage] = Field(default_factory=dict)
    global_calls: int = 0
    session_start: float = Field(default_factory=time.time)


class ExitSignalHistory(_CamelModel):
    """Persisted exit-signal ring buffers - ``.yoke/exit_signals.json``."""

    test_only_loops: list[int] = Field(default_factory=list)
    done_signals: list[int] = Field(default_factory=list)
    completion_indicators: list[int] = Field(default_factory=list)
    consecutive_failures: int = 0


# ---------------------------------------------------------------------------
# Session / progress
# ---------------------------------------------------------------------------


class LoopProgress(BaseModel):
    """Record of a single loop iteration kept by the progress tracker."""

    loop_number: int
    timestamp: float = Field(default_factory=time.time)
    files_changed: int = 0
    response_length: int = 0
    response_hash: str = ""
    has_errors: bool = False
    task_completed: bool = False
    model_used: str = "unknown"
    duration_seconds: float = 0.0


class SessionStats(BaseModel):
    """Counters shown in the end-of-session summary."""

    prompts_sent: int = 0
    model_switches: int = 0
    tasks_completed: int = 0
    loop_count: int = 0
    start_time: float | None = None


class LoopStatus(_CamelModel):
    """Read-only snapshot published to UI shells after every state change."""

    running: bool = False
    loop_count: int = 0
    current_task: str | None = None
    current_model: str | None = None
    circuit_state: CircuitState = CircuitState.CLOSED
    message: str = ""
    phase: SessionPhase = SessionPhase.IDLE
    stop_reason: StopReason | None = None
    guidance: dict[str, Any] | None = None
