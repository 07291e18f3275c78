"""Cancellable waits used at the loop's suspension points."""

from __future__ import annotations

import asyncio
import contextlib


async def wait_for_any(events: list[asyncio.Event], timeout: float) -> bool:
    """Sleep up to *timeout* seconds; return True as soon as any event is set."""
    if any(event.is_set() for event in events):
        return True
    if timeout <= 0:
        return False
    if not events:
        await asyncio.sleep(timeout)
        return False
    waiters = [asyncio.ensure_future(event.wait()) for event in events]
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            if not waiter.done():
                waiter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await waiter
    return bool(done)


async def sleep_unless(event: asyncio.Event, seconds: float) -> bool:
    """Sleep for *seconds* unless *event* fires first; return True if it fired."""
    return await wait_for_any([event], seconds)
