"""Escalation ladder tried before the circuit breaker may end a session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from yoke.schemas import ModelId

logger = logging.getLogger(__name__)

MAX_RECOVERY_ATTEMPTS = 3


class RecoveryStrategy(str, Enum):
    SWITCH_TO_THINKING = "switch_to_thinking"
    USE_WEB_SEARCH = "use_web_search"
    BREAK_DOWN_PROBLEM = "break_down_problem"
    TRY_DIFFERENT_MODEL = "try_different_model"
    SIMPLIFY_REQUEST = "simplify_request"
    ASK_FOR_CLARIFICATION = "ask_for_clarification"


@dataclass(frozen=True)
class RecoveryAction:
    """One rung of the ladder: either a model switch or a prompt nudge."""

    strategy: RecoveryStrategy
    description: str
    priority: int
    prompt_modifier: str | None = None
    model_switch: ModelId | None = None


RECOVERY_ACTIONS: tuple[RecoveryAction, ...] = (
    RecoveryAction(
        strategy=RecoveryStrategy.SWITCH_TO_THINKING,
        description="Switch to a thinking model for deeper reasoning",
        priority=1,
        model_switch=ModelId.CLAUDE_SONNET_THINKING,
    ),
    RecoveryAction(
        strategy=RecoveryStrategy.USE_WEB_SEARCH,
        description="Suggest using @web for online research",
        priority=2,
        prompt_modifier=(
            "I notice we might be stuck. Please try:\n"
            "1. Use @web to search for solutions or documentation\n"
            "2. Look up error messages or similar issues online\n"
            "3. Find code examples that might help\n"
            "\n"
            "Continue working on the task with this additional research."
        ),
    ),
    RecoveryAction(
        strategy=RecoveryStrategy.BREAK_DOWN_PROBLEM,
        description="Break the problem into smaller steps",
        priority=3,
        prompt_modifier=(
            "Let's break this down into smaller steps:\n"
            "1. Identify what's currently blocking progress\n"
            "2. List the smallest possible next action\n"
            "3. Complete just that one small step\n"
            "4. Then we'll continue from there\n"
            "\n"
            "What's the single smallest step we can take right now?"
        ),
    ),
    RecoveryAction(
        strategy=RecoveryStrategy.TRY_DIFFERENT_MODEL,
        description="Try a different model for a fresh perspective",
        priority=4,
        model_switch=ModelId.GEMINI_PRO_HIGH,
    ),
    RecoveryAction(
        strategy=RecoveryStrategy.SIMPLIFY_REQUEST,
        description="Simplify the current request",
        priority=5,
        prompt_modifier=(
            "Let's simplify our approach:\n"
            "1. Skip any complex optimizations for now\n"
            "2. Build the most basic working version first\n"
            "3. We can enhance it later\n"
            "\n"
            "What's the simplest implementation that would work?"
        ),
    ),
    RecoveryAction(
        strategy=RecoveryStrategy.ASK_FOR_CLARIFICATION,
        description="Request clarification on requirements",
        priority=6,
        prompt_modifier=(
            "Before continuing, let's clarify:\n"
            "1. What exactly are we trying to achieve?\n"
            "2. What's the expected outcome?\n"
            "3. Are there any constraints I should know about?\n"
            "\n"
            "Please summarize the current goal and what's blocking us."
        ),
    ),
)


class RecoveryManager:
    """Hands out each strategy at most once, up to ``max_attempts`` in total."""

    def __init__(
        self,
        max_attempts: int = MAX_RECOVERY_ATTEMPTS,
        actions: tuple[RecoveryAction, ...] = RECOVERY_ACTIONS,
    ) -> None:
        self.max_attempts = max_attempts
        self.actions = tuple(sorted(actions, key=lambda a: a.priority))
        self.attempted: set[RecoveryStrategy] = set()
        self.attempt_count = 0

    def get_next_recovery_action(self) -> RecoveryAction | None:
        """Return and mark the best untried strategy, or ``None`` when exhausted."""
        if self.attempt_count >= self.max_attempts:
            logger.warning("Recovery attempt cap (%d) reached", self.max_attempts)
            return None
        for action in self.actions:
            if action.strategy in self.attempted:
                continue
            self.attempted.add(action.strategy)
            self.attempt_count += 1
            logger.info("Recovery attempt %d: %s", self.attempt_count, action.description)
            return action
        logger.warning("All recovery strategies exhausted")
        return None

    def can_recover(self) -> bool:
        return self.attempt_count < self.max_attempts and len(self.attempted) < len(self.actions)

    def reset(self) -> None:
        if self.attempt_count or self.attempted:
            logger.info("Recovery state reset")
        self.attempted.clear()
        self.attempt_count = 0

    def status(self) -> dict[str, int | bool]:
        return {
            "attempts": self.attempt_count,
            "max": self.max_attempts,
            "can_recover": self.can_recover(),
        }
