"""
Bounded, cancellable polling.

All three status loops (authentication, session processing, export) share
the same shape: call, classify, pause, repeat, give up after N attempts. The
pause waits on the caller's cancellation event so a cancelled flow returns
promptly instead of sleeping out the remaining budget.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from ksef_client.errors import OperationCancelledError

log = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class PollPolicy:
    max_attempts: int
    delay_seconds: float

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")


def raise_if_cancelled(cancel: asyncio.Event | None, what: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError(f"{what} cancelled")


async def pause(delay: float, cancel: asyncio.Event | None = None, what: str = "polling") -> None:
    """Sleep for `delay` seconds, or raise OperationCancelledError as soon as `cancel` fires."""
    raise_if_cancelled(cancel, what)
    if cancel is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except TimeoutError:
        return
    raise OperationCancelledError(f"{what} cancelled")


async def poll(
    check: Callable[[int], Awaitable[T | None]],
    policy: PollPolicy,
    on_exhausted: Callable[[int], Exception],
    cancel: asyncio.Event | None = None,
    what: str = "polling",
) -> T:
    """
    Call `check(attempt)` until it returns a value, at most `policy.max_attempts` times.

    `check` returns None for "not terminal yet" and raises for terminal
    failures. No pause follows the final attempt.
    """
    for attempt in range(1, policy.max_attempts + 1):
        raise_if_cancelled(cancel, what)
        outcome = await check(attempt)
        if outcome is not None:
            return outcome
        if attempt < policy.max_attempts:
            await pause(policy.delay_seconds, cancel, what)
    log.warning("polling.exhausted", what=what, attempts=policy.max_attempts)
    raise on_exhausted(policy.max_attempts)
