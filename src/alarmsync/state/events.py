"""Normalized results of store mutations.

Every mutation of a :class:`~alarmsync.state.store.StackStore` returns a
:class:`StoreChange`. Listeners and logs only ever see these objects, never the
raw envelopes.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from alarmsync.models.alarm import Alarm, Category


class UpdateSource(StrEnum):
    LIVE = "live"
    BACKFILL = "backfill"
    OPTIMISTIC = "optimistic"


class ApplyOutcome(StrEnum):
    INSERTED = "inserted"
    UPDATED = "updated"
    REORDERED = "reordered"
    REMOVED = "removed"
    DUPLICATE = "duplicate"
    STALE = "stale"
    ALREADY_CLOSED = "already_closed"
    CLOSED_UNSEEN = "closed_unseen"


class OverlayResolution(StrEnum):
    """What happened to a pending optimistic overlay during a mutation."""

    APPLIED = "applied"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    DISCARDED = "discarded"


_VISIBLE_OUTCOMES: frozenset[ApplyOutcome] = frozenset(
    {ApplyOutcome.INSERTED, ApplyOutcome.UPDATED, ApplyOutcome.REORDERED, ApplyOutcome.REMOVED}
)


class StoreChange(BaseModel):
    """One store mutation, described by the effective alarm before and after."""

    model_config = ConfigDict(frozen=True)

    category: Category
    alarm_id: str
    outcome: ApplyOutcome
    source: UpdateSource
    before: Alarm | None = None
    after: Alarm | None = None
    seq_number: int | None = None
    overlay: OverlayResolution | None = None

    @property
    def changed(self) -> bool:
        """Whether the rendered state of the category may have changed."""
        return self.outcome in _VISIBLE_OUTCOMES or self.overlay is not None

    @property
    def reverted(self) -> bool:
        """A local optimistic value was superseded by a conflicting confirmed one."""
        return self.overlay == OverlayResolution.REVERTED
