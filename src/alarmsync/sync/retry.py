"""Backoff schedule and the cancellable retry timer used for backfill."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from typing import Protocol

from alarmsync._constants import (
    BACKFILL_INITIAL_DELAY_S,
    BACKFILL_MAX_ATTEMPTS,
    BACKFILL_MAX_DELAY_S,
    BACKFILL_MULTIPLIER,
)


class Cancellable(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], Cancellable]
"""``scheduler(delay, callback)``; :meth:`asyncio.AbstractEventLoop.call_later` fits."""


def loop_scheduler(delay: float, callback: Callable[[], None]) -> Cancellable:
    """Schedule *callback* on the running asyncio loop."""
    return asyncio.get_running_loop().call_later(delay, callback)


@dataclasses.dataclass(frozen=True)
class BackfillRetryPolicy:
    """Exponential backoff: ``initial_delay * multiplier ** (n - 1)``, capped.

    ``max_attempts`` counts retries after the initial request. One more
    delay is waited after the last retry before giving up, so the last
    request also gets a chance to be answered.
    """

    initial_delay: float = BACKFILL_INITIAL_DELAY_S
    multiplier: float = BACKFILL_MULTIPLIER
    max_delay: float = BACKFILL_MAX_DELAY_S
    max_attempts: int = BACKFILL_MAX_ATTEMPTS

    def delay_for(self, attempt: int) -> float:
        """Delay preceding retry number *attempt* (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return min(self.max_delay, self.initial_delay * self.multiplier ** (attempt - 1))


class RetryTimer:
    """Rescheduling timer tied to the lifetime of one pending gap.

    ``on_retry(attempt)`` fires after each backoff delay until either
    :meth:`cancel` is called or the attempt budget runs out, in which case
    ``on_exhausted()`` fires once and the timer stops.
    """

    def __init__(
        self,
        policy: BackfillRetryPolicy,
        *,
        on_retry: Callable[[int], None],
        on_exhausted: Callable[[], None],
        scheduler: Scheduler = loop_scheduler,
    ) -> None:
        self._policy = policy
        self._on_retry = on_retry
        self._on_exhausted = on_exhausted
        self._scheduler = scheduler
        self._handle: Cancellable | None = None
        self._attempts = 0
        self._generation = 0

    @property
    def active(self) -> bool:
        return self._handle is not None

    @property
    def attempts(self) -> int:
        return self._attempts

    def start(self) -> None:
        """(Re)start with a fresh attempt budget."""
        self.cancel()
        self._attempts = 0
        self._schedule_next()

    def cancel(self) -> None:
        self._generation += 1
        handle = self._handle
        self._handle = None
        if handle is not None:
            handle.cancel()

    def _schedule_next(self) -> None:
        delay = self._policy.delay_for(self._attempts + 1)
        if self._attempts >= self._policy.max_attempts:
            self._handle = self._scheduler(delay, self._exhaust)
        else:
            self._handle = self._scheduler(delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._attempts += 1
        generation = self._generation
        self._on_retry(self._attempts)
        # on_retry may have cancelled or restarted us.
        if generation == self._generation:
            self._schedule_next()

    def _exhaust(self) -> None:
        self._handle = None
        self._on_exhausted()
