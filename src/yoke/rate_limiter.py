"""Call accounting: per-model rolling windows and the session-wide hourly cap.

:class:`RateLimiter` tracks calls per model inside a rolling window (five
hours by default) and persists its counters to ``.yoke/rate_limits.json`` so
they survive restarts. :class:`HourlyRateLimiter` is a coarser, in-memory cap
on total calls per hour; when it trips, the operator decides whether to wait
out the window (cancellable) or end the session.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from yoke.file_io import state_dir
from yoke.models import DEFAULT_CALL_LIMITS, parse_model_id
from yoke.schemas import ModelId, ModelUsage, RateLimitState
from yoke.waiting import wait_for_any

logger = logging.getLogger(__name__)

RATE_LIMIT_FILE_NAME = "rate_limits.json"
DEFAULT_WINDOW_SECONDS = 5 * 60 * 60
HOUR_SECONDS = 60 * 60

Clock = Callable[[], float]


@dataclass(frozen=True)
class ModelUsageStats:
    """Dashboard row for one model."""

    model_id: ModelId
    used: int
    limit: int
    available: bool


class RateLimiter:
    """Per-model call counter with lazily reset rolling windows.

    Every query first sweeps expired windows. State is written after every
    mutation; storage errors are logged and never raised.
    """

    def __init__(
        self,
        workspace: str | Path | None = None,
        *,
        limits: Mapping[ModelId, int] | None = None,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self.state_path: Path | None = (
            state_dir(workspace) / RATE_LIMIT_FILE_NAME if workspace is not None else None
        )
        self.limits: dict[ModelId, int] = dict(DEFAULT_CALL_LIMITS)
        if limits:
            self.limits.update(limits)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._state: RateLimitState | None = None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def state(self) -> RateLimitState:
        """The loaded state (loaded from disk on first access)."""
        if self._state is None:
            self._state = self._load()
            self._sweep()
        return self._state

    def _fresh_state(self) -> RateLimitState:
        now = self._clock()
        return RateLimitState(
            models={
                model.value: ModelUsage(call_count=0, last_reset=now, is_limited=False)
                for model in self.limits
            },
            global_calls=0,
            session_start=now,
        )

    def _load(self) -> RateLimitState:
        if self.state_path is not None:
            loaded = RateLimitState.load(self.state_path)
            if loaded is not None:
                return loaded
        return self._fresh_state()

    def _save(self) -> None:
        if self.state_path is None or self._state is None:
            return
        try:
            self._state.save(self.state_path)
        except OSError:
            logger.warning("Failed to save rate limit state to %s", self.state_path, exc_info=True)

    def _sweep(self) -> None:
        """Zero every model whose window has elapsed; persist if anything changed."""
        state = self._state
        if state is None:
            return
        now = self._clock()
        changed = False
        for model_key, usage in state.models.items():
            if now - usage.last_reset >= self.window_seconds:
                if usage.call_count or usage.is_limited:
                    logger.info("Rate limit window reset for %s", model_key)
                state.models[model_key] = ModelUsage(call_count=0, last_reset=now, is_limited=False)
                changed = True
        if changed:
            self._save()

    def _limit_for(self, model_id: ModelId) -> int:
        return self.limits.get(model_id, DEFAULT_CALL_LIMITS.get(model_id, 1))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def can_call(self, model: ModelId | str) -> bool:
        """Return True when *model* still has calls left in its window."""
        model_id = parse_model_id(model)
        state = self.state
        self._sweep()
        usage = state.models.get(model_id.value)
        if usage is None:
            return True
        return usage.call_count < self._limit_for(model_id)

    def record_call(self, model: ModelId | str) -> None:
        """Count one call against *model* and persist."""
        model_id = parse_model_id(model)
        state = self.state
        self._sweep()
        usage = state.models.get(model_id.value)
        if usage is None:
            usage = ModelUsage(call_count=0, last_reset=self._clock(), is_limited=False)
            state.models[model_id.value] = usage
        usage.call_count += 1
        state.global_calls += 1
        limit = self._limit_for(model_id)
        if usage.call_count >= limit and not usage.is_limited:
            usage.is_limited = True
            logger.warning(
                "%s reached its call limit (%d/%d)", model_id.value, usage.call_count, limit
            )
        else:
            logger.debug("Call recorded for %s (%d/%d)", model_id.value, usage.call_count, limit)
        self._save()

    def get_unavailable(self) -> set[ModelId]:
        """Return every model that is currently limited."""
        state = self.state
        self._sweep()
        unavailable: set[ModelId] = set()
        for model_key, usage in state.models.items():
            try:
                model_id = parse_model_id(model_key)
            except ValueError:
                continue
            if usage.is_limited or usage.call_count >= self._limit_for(model_id):
                unavailable.add(model_id)
        return unavailable

    def time_until_reset(self, model: ModelId | str) -> float:
        """Seconds until *model*'s window resets (0 for untracked models)."""
        usage = self.state.models.get(parse_model_id(model).value)
        if usage is None:
            return 0.0
        elapsed = self._clock() - usage.last_reset
        return max(0.0, self.window_seconds - elapsed)

    @property
    def global_calls(self) -> int:
        return self.state.global_calls

    def stats(self) -> list[ModelUsageStats]:
        """Return used/limit/available rows for every known model."""
        state = self.state
        self._sweep()
        rows: list[ModelUsageStats] = []
        for model_id, limit in self.limits.items():
            usage = state.models.get(model_id.value)
            used = usage.call_count if usage is not None else 0
            rows.append(
                ModelUsageStats(model_id=model_id, used=used, limit=limit, available=used < limit)
            )
        return rows

    def reset_all(self) -> None:
        """Administrative reset: zero every counter and persist."""
        self._state = self._fresh_state()
        self._save()
        logger.info("All model rate limits reset")


# ---------------------------------------------------------------------------
# Session-level hourly cap
# ---------------------------------------------------------------------------

RateLimitDecision = Literal["wait", "exit"]


@dataclass(frozen=True)
class HourlyLimitStatus:
    """Snapshot shown to the operator when the hourly cap trips."""

    calls_this_hour: int
    max_calls: int
    remaining: int
    is_limited: bool
    seconds_until_reset: float

    @property
    def minutes_until_reset(self) -> int:
        return math.ceil(self.seconds_until_reset / 60)


RateLimitDecider = Callable[[HourlyLimitStatus], Awaitable[RateLimitDecision]]
CountdownReporter = Callable[[float], None]


class HourlyRateLimiter:
    """Caps total prompt calls per hour regardless of model."""

    def __init__(
        self,
        max_calls_per_hour: int = 100,
        *,
        tick_seconds: float = 10.0,
        clock: Clock = time.time,
    ) -> None:
        self.max_calls = int(max_calls_per_hour)
        self.tick_seconds = float(tick_seconds)
        self._clock = clock
        self.calls_this_hour = 0
        self.hour_start = clock()
        self.is_limited = False
        self.waiting_for_reset = False
        self._cancel = asyncio.Event()

    def _check_hour_reset(self) -> None:
        now = self._clock()
        if now - self.hour_start >= HOUR_SECONDS:
            self._reset_window(now)
            logger.info("Hourly rate limit reset")

    def _reset_window(self, now: float | None = None) -> None:
        self.calls_this_hour = 0
        self.hour_start = self._clock() if now is None else now
        self.is_limited = False

    def can_make_call(self) -> bool:
        self._check_hour_reset()
        return self.calls_this_hour < self.max_calls and not self.waiting_for_reset

    def record_call(self) -> None:
        self._check_hour_reset()
        self.calls_this_hour += 1
        logger.info("Call recorded (%d/%d this hour)", self.calls_this_hour, self.max_calls)

    def remaining_calls(self) -> int:
        self._check_hour_reset()
        return max(0, self.max_calls - self.calls_this_hour)

    def time_until_reset(self) -> float:
        elapsed = self._clock() - self.hour_start
        return max(0.0, HOUR_SECONDS - elapsed)

    def status(self) -> HourlyLimitStatus:
        self._check_hour_reset()
        return HourlyLimitStatus(
            calls_this_hour=self.calls_this_hour,
            max_calls=self.max_calls,
            remaining=self.remaining_calls(),
            is_limited=self.is_limited,
            seconds_until_reset=self.time_until_reset(),
        )

    async def handle_limit_reached(
        self,
        decide: RateLimitDecider,
        *,
        stop: asyncio.Event | None = None,
        on_tick: CountdownReporter | None = None,
    ) -> RateLimitDecision:
        """Ask the operator to wait or exit; ``"wait"`` returns once the window resets."""
        self.is_limited = True
        status = self.status()
        logger.warning(
            "Hourly rate limit reached (%d calls). %d minutes until reset.",
            status.calls_this_hour,
            status.minutes_until_reset,
        )
        choice = await decide(status)
        if choice != "wait":
            return "exit"
        return await self.wait_for_reset(stop=stop, on_tick=on_tick)

    async def wait_for_reset(
        self,
        *,
        stop: asyncio.Event | None = None,
        on_tick: CountdownReporter | None = None,
    ) -> RateLimitDecision:
        """Count down to the window reset, polling for cancellation every tick."""
        self._cancel.clear()
        self.waiting_for_reset = True
        events = [self._cancel] if stop is None else [self._cancel, stop]
        deadline = self._clock() + self.time_until_reset()
        logger.info("Waiting %d minutes for rate limit reset...", math.ceil((deadline - self._clock()) / 60))
        try:
            while True:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                if on_tick is not None:
                    on_tick(remaining)
                if await wait_for_any(events, min(self.tick_seconds, remaining)):
                    logger.info("Rate limit wait cancelled")
                    return "exit"
        finally:
            self.waiting_for_reset = False
        self._reset_window()
        logger.info("Rate limit reset. Resuming...")
        return "wait"

    def cancel_wait(self) -> None:
        """Abort a pending :meth:`wait_for_reset` countdown."""
        self._cancel.set()

    def reset(self) -> None:
        self._reset_window()
        self.waiting_for_reset = False
        self._cancel = asyncio.Event()
        logger.info("Hourly rate limiter reset")
