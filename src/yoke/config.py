"""Loop configuration knobs and their per-workspace backing file."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from yoke.file_io import atomic_write_text, read_json, state_dir
from yoke.models import DEFAULT_CALL_LIMITS, parse_model_id
from yoke.schemas import ModelId, TaskCategory

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"
DEFAULT_TASK_LIST_FILE = "@fix_plan.md"


class YokeConfig(BaseModel):
    """Every knob the control loop consumes.

    The loop never writes this object; the CLI (or any other shell) owns it.
    """

    loop_interval_seconds: float = Field(default=30.0, ge=0)
    max_loops: int = Field(default=100, ge=1)
    max_calls_per_hour: int = Field(default=100, ge=1)
    execution_timeout_minutes: float = Field(default=15.0, gt=0)
    max_consecutive_test_loops: int = Field(default=3, ge=1)
    max_consecutive_done_signals: int = Field(default=2, ge=1)
    max_consecutive_failures: int = Field(default=3, ge=1)

    preferred_model_for_reasoning: ModelId = ModelId.CLAUDE_OPUS_THINKING
    preferred_model_for_frontend: ModelId = ModelId.GEMINI_PRO_HIGH
    preferred_model_for_quick: ModelId = ModelId.GEMINI_FLASH
    auto_switch_models: bool = True

    auto_git_commit: bool = False
    commit_every_loops: int = Field(default=10, ge=1)

    rate_limit_window_hours: float = Field(default=5.0, gt=0)
    model_call_limits: dict[ModelId, int] = Field(default_factory=dict)
    rate_limit_countdown_tick_seconds: float = Field(default=10.0, gt=0)

    # Circuit breaker / recovery
    no_progress_threshold: int = Field(default=3, ge=1)
    half_open_threshold: int = Field(default=2, ge=1)
    same_signal_threshold: int = Field(default=5, ge=1)
    max_recovery_attempts: int = Field(default=3, ge=0)

    task_list_file: str = DEFAULT_TASK_LIST_FILE
    reconnect_delay_seconds: float = Field(default=5.0, ge=0)

    @field_validator(
        "preferred_model_for_reasoning",
        "preferred_model_for_frontend",
        "preferred_model_for_quick",
        mode="before",
    )
    @classmethod
    def _coerce_model(cls, value: Any) -> ModelId:
        """Accept ids, enum names and dropdown labels."""
        return parse_model_id(value)

    @field_validator("model_call_limits", mode="before")
    @classmethod
    def _coerce_limits(cls, value: Any) -> dict[ModelId, int]:
        if not value:
            return {}
        if not isinstance(value, dict):
            raise ValueError("model_call_limits must be a mapping of model id to call count")
        limits: dict[ModelId, int] = {}
        for key, raw_limit in value.items():
            limit = int(raw_limit)
            if limit < 1:
                raise ValueError(f"call limit for {key} must be >= 1")
            limits[parse_model_id(key)] = limit
        return limits

    @field_validator("task_list_file")
    @classmethod
    def _strip_task_list_file(cls, value: str) -> str:
        return value.strip() or DEFAULT_TASK_LIST_FILE

    # -- helpers --

    @property
    def execution_timeout_seconds(self) -> float:
        return self.execution_timeout_minutes * 60.0

    @property
    def rate_limit_window_seconds(self) -> float:
        return self.rate_limit_window_hours * 3600.0

    def call_limits(self) -> dict[ModelId, int]:
        """Return the default per-model limits with configured overrides applied."""
        merged = dict(DEFAULT_CALL_LIMITS)
        merged.update(self.model_call_limits)
        return merged

    def preferred_model(self, category: TaskCategory) -> ModelId:
        """Return the configured model for *category*.

        General and bulk work fall back to the reasoning preference.
        """
        if category == TaskCategory.FRONTEND:
            return self.preferred_model_for_frontend
        if category == TaskCategory.QUICK:
            return self.preferred_model_for_quick
        return self.preferred_model_for_reasoning


def config_path(workspace: str | Path) -> Path:
    """Return the config file location for *workspace*."""
    return state_dir(workspace) / CONFIG_FILE_NAME


def load_config(workspace: str | Path, **overrides: Any) -> YokeConfig:
    """Load ``.yoke/config.json`` for *workspace*, applying keyword overrides.

    A missing or malformed file yields defaults; invalid overrides raise
    :class:`pydantic.ValidationError`.
    """
    path = config_path(workspace)
    raw = read_json(path, {})
    try:
        config = YokeConfig.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Invalid config in %s; using defaults: %s", path, exc)
        config = YokeConfig()
    if overrides:
        merged = config.model_dump()
        merged.update({k: v for k, v in overrides.items() if v is not None})
        config = YokeConfig.model_validate(merged)
    return config


def save_config(workspace: str | Path, config: YokeConfig) -> Path:
    """Write *config* to the workspace config file and return its path."""
    path = config_path(workspace)
    atomic_write_text(path, config.model_dump_json(indent=2))
    return path
