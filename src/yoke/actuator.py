"""Abstract base class for the component that drives the assistant's UI.

The loop never touches the editor directly: every prompt, response read,
model switch and button click goes through an :class:`Actuator`, so the
transport (CDP, a test double, ...) can be swapped freely.
"""

from __future__ import annotations

import abc

from yoke.schemas import ModelId


class Actuator(abc.ABC):
    """Common interface for chat-assistant drivers.

    Implementations report failure through return values (``False``, ``""``,
    ``0``) where they can; exceptions raised by any method are treated by
    the loop as a failed iteration.
    """

    #: Registry key / display name.
    name: str = "base"

    @abc.abstractmethod
    async def connect(self) -> bool:
        """Attach to the assistant; return True on success."""

    @abc.abstractmethod
    def is_connected(self) -> bool:
        """Return True while the attachment is usable."""

    @abc.abstractmethod
    async def inject(self, prompt: str) -> bool:
        """Type *prompt* into the chat input and submit it."""

    @abc.abstractmethod
    async def wait_for_response(self, timeout_seconds: float) -> str:
        """Block until the assistant finishes replying and return the reply text.

        Returns an empty string when nothing arrived before *timeout_seconds*.
        """

    @abc.abstractmethod
    async def switch_model(self, model_id: ModelId) -> bool:
        """Select *model_id* in the assistant's model picker."""

    @abc.abstractmethod
    async def click_pending_acceptance(self) -> int:
        """Click any pending accept/run buttons; return how many were clicked."""

    async def close(self) -> None:
        """Release transport resources. Optional."""


# ── Registry ──────────────────────────────────────────────────────

_REGISTRY: dict[str, type[Actuator]] = {}


def register_actuator(key: str, cls: type[Actuator]) -> None:
    """Register an actuator class under a lookup key."""
    normalized_key = (key or "").strip()
    if not normalized_key:
        raise ValueError("Actuator key must be a non-empty string")
    if not isinstance(cls, type) or not issubclass(cls, Actuator):
        raise TypeError("Registered actuator must be an Actuator subclass")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Actuator '{normalized_key}' is already registered with {existing.__name__}"
        )

    _REGISTRY[normalized_key] = cls


def get_actuator_class(key: str) -> type[Actuator]:
    """Look up a registered actuator class by key."""
    normalized_key = (key or "").strip()
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown actuator '{normalized_key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def list_actuators() -> list[str]:
    """Return all registered actuator keys."""
    return sorted(_REGISTRY)
