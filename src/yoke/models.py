"""Static model catalog: labels, capabilities, priorities and call limits."""

from __future__ import annotations

from dataclasses import dataclass

from yoke.schemas import ModelId, TaskCategory


@dataclass(frozen=True)
class ModelSpec:
    """Reference data for one selectable model."""

    id: ModelId
    label: str
    categories: tuple[TaskCategory, ...]
    priority: int
    cost_tier: str
    default_limit: int
    """Calls allowed per rate-limit window."""


MODEL_CATALOG: tuple[ModelSpec, ...] = (
    ModelSpec(
        id=ModelId.CLAUDE_OPUS_THINKING,
        label="Claude Opus 4.5 (Thinking)",
        categories=(TaskCategory.REASONING,),
        priority=100,
        cost_tier="high",
        default_limit=50,
    ),
    ModelSpec(
        id=ModelId.CLAUDE_SONNET_THINKING,
        label="Claude Sonnet 4.5 (Thinking)",
        categories=(TaskCategory.REASONING, TaskCategory.GENERAL),
        priority=90,
        cost_tier="medium",
        default_limit=100,
    ),
    ModelSpec(
        id=ModelId.GEMINI_PRO_HIGH,
        label="Gemini 3 Pro (High)",
        categories=(TaskCategory.FRONTEND, TaskCategory.GENERAL),
        priority=85,
        cost_tier="high",
        default_limit=100,
    ),
    ModelSpec(
        id=ModelId.CLAUDE_SONNET,
        label="Claude Sonnet 4.5",
        categories=(TaskCategory.GENERAL, TaskCategory.REASONING),
        priority=80,
        cost_tier="medium",
        default_limit=150,
    ),
    ModelSpec(
        id=ModelId.GEMINI_PRO_LOW,
        label="Gemini 3 Pro (Low)",
        categories=(TaskCategory.FRONTEND, TaskCategory.GENERAL, TaskCategory.QUICK),
        priority=70,
        cost_tier="low",
        default_limit=200,
    ),
    ModelSpec(
        id=ModelId.GEMINI_FLASH,
        label="Gemini 3 Flash",
        categories=(TaskCategory.QUICK, TaskCategory.BULK),
        priority=60,
        cost_tier="low",
        default_limit=300,
    ),
    ModelSpec(
        id=ModelId.GPT_OSS,
        label="GPT-OSS 120B (Medium)",
        categories=(TaskCategory.BULK, TaskCategory.GENERAL),
        priority=50,
        cost_tier="low",
        default_limit=200,
    ),
)

FALLBACK_ORDER: tuple[ModelId, ...] = (
    ModelId.CLAUDE_OPUS_THINKING,
    ModelId.CLAUDE_SONNET_THINKING,
    ModelId.CLAUDE_SONNET,
    ModelId.GEMINI_PRO_HIGH,
    ModelId.GEMINI_PRO_LOW,
    ModelId.GEMINI_FLASH,
    ModelId.GPT_OSS,
)
"""Rate-limit fallback order, most capable first."""

_BY_ID: dict[ModelId, ModelSpec] = {spec.id: spec for spec in MODEL_CATALOG}

DEFAULT_CALL_LIMITS: dict[ModelId, int] = {spec.id: spec.default_limit for spec in MODEL_CATALOG}


def get_spec(model_id: ModelId | str) -> ModelSpec:
    """Return catalog data for *model_id* (raises ``ValueError`` when unknown)."""
    return _BY_ID[parse_model_id(model_id)]


def model_label(model_id: ModelId | str | None) -> str:
    """Return the dropdown label for *model_id*, or the raw value when unknown."""
    if model_id is None:
        return "unknown"
    try:
        return get_spec(model_id).label
    except ValueError:
        return str(model_id)


def parse_model_id(value: ModelId | str) -> ModelId:
    """Resolve an id, enum name, or dropdown label to a :class:`ModelId`."""
    if isinstance(value, ModelId):
        return value
    text = str(value or "").strip()
    try:
        return ModelId(text)
    except ValueError:
        pass
    key = text.lower()
    for spec in MODEL_CATALOG:
        if key in {spec.id.name.lower(), spec.label.lower()}:
            return spec.id
    # Older catalogs wrote versions with dots ("claude-sonnet-4.5").
    dashed = key.replace(".", "-")
    for spec in MODEL_CATALOG:
        if spec.id.value in {dashed, f"{dashed}-medium"}:
            return spec.id
    known = ", ".join(m.value for m in ModelId)
    raise ValueError(f"Unknown model '{text}'. Known models: {known}")
