"""Task classification and model choice.

A task description is scored against a keyword table per
:class:`TaskCategory`; the category with the strictly highest score wins and
ties (including all-zero) fall back to ``general``. The category then maps to
a model either through the configured per-category preference or, when that
model is unavailable, through the capability table in :mod:`yoke.models`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from yoke.config import YokeConfig
from yoke.models import MODEL_CATALOG, model_label
from yoke.patterns import SignalPattern, literal_table, score
from yoke.schemas import ModelId, TaskCategory

logger = logging.getLogger(__name__)

TASK_KEYWORDS: tuple[SignalPattern, ...] = (
    *literal_table(
        TaskCategory.REASONING.value,
        (
            "debug", "fix bug", "algorithm", "architecture", "refactor",
            "optimize", "analyze", "complex", "logic", "performance",
            "multi-file", "migration", "security", "error handling",
            "race condition", "deadlock", "memory leak", "investigate",
        ),
    ),
    *literal_table(
        TaskCategory.FRONTEND.value,
        (
            "ui", "css", "component", "react", "vue", "html", "style",
            "design", "animation", "responsive", "layout", "tailwind",
            "button", "form", "modal", "navbar", "sidebar", "dashboard",
        ),
    ),
    *literal_table(
        TaskCategory.QUICK.value,
        (
            "format", "typo", "rename", "simple", "small change", "minor",
            "comment", "cleanup", "lint", "import", "export",
        ),
    ),
    *literal_table(
        TaskCategory.GENERAL.value,
        (
            "feature", "implement", "add", "create", "test", "documentation",
            "api", "endpoint", "function", "class", "module",
        ),
    ),
    *literal_table(
        TaskCategory.BULK.value,
        ("batch", "multiple files", "bulk update", "mass", "all files"),
    ),
)

_CATEGORY_NAMES: dict[TaskCategory, str] = {
    TaskCategory.REASONING: "complex reasoning",
    TaskCategory.FRONTEND: "UI work",
    TaskCategory.QUICK: "quick task",
    TaskCategory.GENERAL: "general task",
    TaskCategory.BULK: "bulk edit",
}


@dataclass(frozen=True)
class ModelSelection:
    """A model chosen for a task, with a human-readable explanation."""

    model_id: ModelId
    category: TaskCategory
    reasoning: str

    @property
    def label(self) -> str:
        return model_label(self.model_id)


def classify(text: str | None) -> TaskCategory:
    """Return the :class:`TaskCategory` best matching *text*."""
    totals = score(TASK_KEYWORDS, (text or "").lower())
    best = TaskCategory.GENERAL
    best_score = 0.0
    tied = False
    for name, value in totals.items():
        if value > best_score:
            best, best_score, tied = TaskCategory(name), value, False
        elif value == best_score and value > 0:
            tied = True
    if tied:
        return TaskCategory.GENERAL
    return best


def pick_model(
    category: TaskCategory,
    excluded: Iterable[ModelId] = (),
) -> ModelId | None:
    """Return the highest-priority capable model not in *excluded*."""
    skip = set(excluded)
    candidates = [
        spec
        for spec in MODEL_CATALOG
        if category in spec.categories and spec.id not in skip
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda spec: spec.priority).id


class ModelSelector:
    """Maps task text to a model using the configured preferences."""

    def __init__(self, config: YokeConfig | None = None) -> None:
        self.config = config or YokeConfig()

    def select_for_task(
        self,
        task: str,
        excluded: Iterable[ModelId] = (),
    ) -> ModelSelection | None:
        """Pick a model for *task*, or ``None`` when every candidate is excluded."""
        skip = set(excluded)
        category = classify(task)
        preferred = self.config.preferred_model(category)
        model_id: ModelId | None = preferred if preferred not in skip else None
        if model_id is None:
            model_id = pick_model(category, skip)
            if model_id is not None:
                logger.info(
                    "Preferred model %s unavailable; using %s for %s",
                    preferred.value,
                    model_id.value,
                    category.value,
                )
        if model_id is None:
            logger.warning("No available model for %s task", category.value)
            return None
        selection = ModelSelection(
            model_id=model_id,
            category=category,
            reasoning=f"Using {model_label(model_id)} for {_CATEGORY_NAMES[category]}",
        )
        logger.debug("Selected model %s (%s)", model_id.value, selection.reasoning)
        return selection
