"""Detect rate-limit replies and walk the fallback model list."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

from yoke.models import FALLBACK_ORDER, parse_model_id
from yoke.patterns import SignalPattern, first_match, regex_table
from yoke.schemas import ModelId

logger = logging.getLogger(__name__)

RATE_LIMIT_PATTERNS: tuple[SignalPattern, ...] = regex_table(
    "rate_limit",
    (
        r"rate\s*limit",
        r"model.*unavailable",
        r"try\s*again\s*later",
        r"usage\s*limit\s*reached",
        r"limit\s*exceeded",
        r"too\s*many\s*requests",
        r"quota\s*exceeded",
        r"capacity",
        r"overloaded",
    ),
)


def is_rate_limited(response: str | None) -> bool:
    """Return True when *response* reads like a rate-limit or capacity error."""
    row = first_match(RATE_LIMIT_PATTERNS, response or "")
    if row is None:
        return False
    logger.warning("Rate limit detected: %s", row.pattern)
    return True


class RateLimitFallback:
    """Tracks exhausted models and the model currently in use."""

    def __init__(
        self,
        initial_model: ModelId | str = ModelId.CLAUDE_OPUS_THINKING,
        *,
        order: Sequence[ModelId] = FALLBACK_ORDER,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.order: tuple[ModelId, ...] = tuple(order)
        self._initial = parse_model_id(initial_model)
        self._clock = clock
        self.current_model: ModelId = self._initial
        self.exhausted: set[ModelId] = set()
        self._exhausted_at: dict[ModelId, float] = {}
        self.switch_count = 0
        self.last_switch: float = 0.0
        self.last_full_reset: float = clock()

    def is_rate_limited(self, response: str | None) -> bool:
        return is_rate_limited(response)

    def next_model(self) -> ModelId | None:
        """Mark the current model exhausted and return the next usable one.

        Returns ``None`` once every model in the fallback list is exhausted.
        """
        self.exhausted.add(self.current_model)
        self._exhausted_at[self.current_model] = self._clock()
        logger.info("Marked %s as rate limited", self.current_model.value)
        for model in self.order:
            if model not in self.exhausted:
                self.current_model = model
                self.last_switch = self._clock()
                self.switch_count += 1
                logger.info("Switching to %s", model.value)
                return model
        logger.error("All models are rate limited!")
        return None

    def set_current_model(self, model: ModelId | str) -> ModelId | None:
        """Adopt *model* unless it is exhausted, in which case fall back."""
        model_id = parse_model_id(model)
        if model_id in self.exhausted:
            logger.warning("%s is rate limited, finding alternative", model_id.value)
            for candidate in self.order:
                if candidate not in self.exhausted:
                    self.current_model = candidate
                    return candidate
            return None
        self.current_model = model_id
        return model_id

    def clear(self, model: ModelId | str) -> None:
        """Forget the exhausted mark for one model (e.g. after a cooldown)."""
        model_id = parse_model_id(model)
        self.exhausted.discard(model_id)
        self._exhausted_at.pop(model_id, None)
        logger.info("Cleared rate limit for %s", model_id.value)

    def clear_expired(self, window_seconds: float) -> list[ModelId]:
        """Clear exhausted marks older than *window_seconds*; return the cleared models."""
        now = self._clock()
        expired = [
            model
            for model in self.exhausted
            if now - self._exhausted_at.get(model, now) >= window_seconds
        ]
        for model in expired:
            self.clear(model)
        return expired

    def clear_all_if_due(self, interval_seconds: float) -> bool:
        """Run the periodic bulk reset once *interval_seconds* have passed since the last one."""
        if self._clock() - self.last_full_reset < interval_seconds:
            return False
        self.clear_all()
        return True

    def clear_all(self) -> None:
        self.exhausted.clear()
        self._exhausted_at.clear()
        self.last_full_reset = self._clock()
        logger.info("All rate limits cleared")

    def available_count(self) -> int:
        return sum(1 for model in self.order if model not in self.exhausted)

    def has_available_models(self) -> bool:
        return self.available_count() > 0

    def reset(self, initial_model: ModelId | str | None = None) -> None:
        if initial_model is not None:
            self._initial = parse_model_id(initial_model)
        self.current_model = self._initial
        self.exhausted.clear()
        self._exhausted_at.clear()
        self.switch_count = 0
        self.last_switch = 0.0
        self.last_full_reset = self._clock()
        logger.info("Rate limit fallback reset")
