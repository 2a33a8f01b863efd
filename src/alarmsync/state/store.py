"""Deterministic per-category alarm store.

This is the only component allowed to mutate a category's alarms. It holds
two layers:

* the *confirmed* map, fed exclusively by server envelopes under
  last-writer-wins;
* the *optimistic overlay*, holding tentative values of local actions.

Reads merge the two (overlay wins while present). Any accepted confirmed
event for an alarm clears its overlay, so confirmation and conflict reversal
need no special handling. The ordered index always follows the merged view.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime
from typing import assert_never

from pydantic import BaseModel, ConfigDict

from alarmsync.models._base import utcnow
from alarmsync.models.alarm import Alarm, Category
from alarmsync.models.envelope import AnyEnvelope, ClosedEnvelope, CreatedEnvelope, UpdatedEnvelope
from alarmsync.state.events import ApplyOutcome, OverlayResolution, StoreChange, UpdateSource
from alarmsync.state.ordering import OrderingEngine
from alarmsync.state.policy import ordering_changed, should_accept_update, tentative_matches


class OptimisticOverlay(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    alarm: Alarm
    applied_at: datetime
    # updated_at of the confirmed alarm the action was based on.
    base_updated_at: datetime
    via_fallback: bool = False


def _visible(alarm: Alarm | None) -> bool:
    # A tentative close hides the alarm until the server decides.
    return alarm is not None and not alarm.is_closed


class StackStore:
    """Normalized store for one alarm category.

    ``last_seq`` and ``pending`` form the sequence cursor. They are owned by
    the category's :class:`~alarmsync.sync.reconciler.SequenceReconciler`;
    the store itself never reads them.

    Closed ids are kept as tombstones for the lifetime of the store so that a
    late create or update can never resurrect them. The set grows by one id
    per closed alarm; callers that run for a long time recycle the store.
    """

    def __init__(
        self,
        category: Category,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.category = category
        self._clock = clock
        self._confirmed: dict[str, Alarm] = {}
        self._overlay: dict[str, OptimisticOverlay] = {}
        self._closed: set[str] = set()
        self._order = OrderingEngine()
        self.last_seq: int | None = None
        self.pending: set[int] = set()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, alarm_id: object) -> bool:
        return alarm_id in self._order

    def __iter__(self) -> Iterator[Alarm]:
        return iter(self.alarms())

    def get(self, alarm_id: str) -> Alarm | None:
        """Merged view of one alarm (overlay wins), or ``None``."""
        overlay = self._overlay.get(alarm_id)
        if overlay is not None:
            return overlay.alarm
        return self._confirmed.get(alarm_id)

    def get_confirmed(self, alarm_id: str) -> Alarm | None:
        return self._confirmed.get(alarm_id)

    def ordered_ids(self) -> list[str]:
        return self._order.ids

    def alarms(self) -> list[Alarm]:
        """Visible alarms in priority order."""
        result: list[Alarm] = []
        for alarm_id in self._order:
            alarm = self.get(alarm_id)
            if alarm is not None:
                result.append(alarm)
        return result

    def confirmed_ids(self) -> set[str]:
        return set(self._confirmed)

    def is_unconfirmed(self, alarm_id: str) -> bool:
        return alarm_id in self._overlay

    def unconfirmed_ids(self) -> set[str]:
        return set(self._overlay)

    def overlay(self, alarm_id: str) -> OptimisticOverlay | None:
        return self._overlay.get(alarm_id)

    def is_closed(self, alarm_id: str) -> bool:
        return alarm_id in self._closed

    # ------------------------------------------------------------------
    # Confirmed (server) path
    # ------------------------------------------------------------------

    def apply(self, envelope: AnyEnvelope, *, source: UpdateSource = UpdateSource.LIVE) -> StoreChange:
        """Apply a validated envelope of this category."""
        if envelope.category != self.category:
            raise ValueError(
                f"envelope for category {envelope.category.value} applied to {self.category.value} store"
            )

        match envelope:
            case ClosedEnvelope():
                return self._close(envelope, source)
            case CreatedEnvelope():
                if envelope.alarm.is_closed:
                    return self._close(envelope, source)
                return self._create(envelope, source)
            case UpdatedEnvelope():
                if envelope.alarm.is_closed:
                    return self._close(envelope, source)
                return self._update(envelope, source)
            case _:
                assert_never(envelope)

    def _change(
        self,
        envelope: AnyEnvelope,
        source: UpdateSource,
        outcome: ApplyOutcome,
        *,
        before: Alarm | None = None,
        after: Alarm | None = None,
        overlay: OverlayResolution | None = None,
    ) -> StoreChange:
        return StoreChange(
            category=self.category,
            alarm_id=envelope.alarm_id,
            outcome=outcome,
            source=source,
            before=before,
            after=after,
            seq_number=envelope.seq_number,
            overlay=overlay,
        )

    def _create(self, envelope: AnyEnvelope, source: UpdateSource) -> StoreChange:
        alarm = envelope.alarm
        if alarm.id in self._closed:
            return self._change(envelope, source, ApplyOutcome.ALREADY_CLOSED)
        existing = self._confirmed.get(alarm.id)
        if existing is not None:
            return self._change(envelope, source, ApplyOutcome.DUPLICATE, before=existing, after=existing)

        self._confirmed[alarm.id] = alarm
        outcome = self._reindex(None, alarm)
        return self._change(envelope, source, outcome, after=alarm)

    def _update(self, envelope: AnyEnvelope, source: UpdateSource) -> StoreChange:
        incoming = envelope.alarm
        if incoming.id in self._closed:
            return self._change(envelope, source, ApplyOutcome.ALREADY_CLOSED)

        cached = self._confirmed.get(incoming.id)
        if cached is None:
            # Update overtook its create.
            return self._create(envelope, source)

        if not should_accept_update(
            cached_updated_at=cached.updated_at,
            incoming_updated_at=incoming.updated_at,
        ):
            current = self.get(incoming.id)
            return self._change(envelope, source, ApplyOutcome.STALE, before=current, after=current)

        before = self.get(incoming.id)
        self._confirmed[incoming.id] = incoming
        resolution: OverlayResolution | None = None
        pending = self._overlay.pop(incoming.id, None)
        if pending is not None:
            if tentative_matches(pending.alarm, incoming):
                resolution = OverlayResolution.CONFIRMED
            else:
                resolution = OverlayResolution.REVERTED

        outcome = self._reindex(before, incoming)
        return self._change(envelope, source, outcome, before=before, after=incoming, overlay=resolution)

    def _close(self, envelope: AnyEnvelope, source: UpdateSource) -> StoreChange:
        alarm_id = envelope.alarm_id
        before = self.get(alarm_id)
        already = alarm_id in self._closed
        self._closed.add(alarm_id)
        self._confirmed.pop(alarm_id, None)
        pending = self._overlay.pop(alarm_id, None)

        resolution: OverlayResolution | None = None
        if pending is not None:
            resolution = OverlayResolution.CONFIRMED if pending.alarm.is_closed else OverlayResolution.REVERTED

        if alarm_id in self._order:
            self._order.remove(alarm_id)
            return self._change(envelope, source, ApplyOutcome.REMOVED, before=before, overlay=resolution)
        if before is not None:
            # Hidden by a tentative close; the removal is now final.
            return self._change(envelope, source, ApplyOutcome.REMOVED, before=before, overlay=resolution)
        if already:
            return self._change(envelope, source, ApplyOutcome.ALREADY_CLOSED)
        return self._change(envelope, source, ApplyOutcome.CLOSED_UNSEEN)

    # ------------------------------------------------------------------
    # Optimistic path
    # ------------------------------------------------------------------

    def apply_optimistic(self, tentative: Alarm, *, via_fallback: bool = False) -> StoreChange:
        """Overlay a tentative value on a confirmed alarm.

        Raises :class:`KeyError` if the alarm has no confirmed value.
        """
        if tentative.category != self.category:
            raise ValueError(f"alarm of category {tentative.category.value} applied to {self.category.value} store")
        confirmed = self._confirmed[tentative.id]
        before = self.get(tentative.id)
        self._overlay[tentative.id] = OptimisticOverlay(
            alarm=tentative,
            applied_at=self._clock(),
            base_updated_at=confirmed.updated_at,
            via_fallback=via_fallback,
        )
        outcome = self._reindex(before, tentative)
        return StoreChange(
            category=self.category,
            alarm_id=tentative.id,
            outcome=outcome,
            source=UpdateSource.OPTIMISTIC,
            before=before,
            after=tentative,
            overlay=OverlayResolution.APPLIED,
        )

    def mark_via_fallback(self, alarm_id: str) -> None:
        overlay = self._overlay.get(alarm_id)
        if overlay is not None:
            self._overlay[alarm_id] = overlay.model_copy(update={"via_fallback": True})

    def discard_optimistic(self, alarm_id: str) -> StoreChange | None:
        """Drop a tentative value, restoring the confirmed one."""
        overlay = self._overlay.pop(alarm_id, None)
        if overlay is None:
            return None
        before = overlay.alarm
        after = self._confirmed.get(alarm_id)
        outcome = self._reindex(before, after)
        return StoreChange(
            category=self.category,
            alarm_id=alarm_id,
            outcome=outcome,
            source=UpdateSource.OPTIMISTIC,
            before=before,
            after=after,
            overlay=OverlayResolution.DISCARDED,
        )

    # ------------------------------------------------------------------
    # Index maintenance
    # ------------------------------------------------------------------

    def _reindex(self, before: Alarm | None, after: Alarm | None) -> ApplyOutcome:
        was_visible = _visible(before)
        is_visible = _visible(after)
        if is_visible and not was_visible:
            assert after is not None  # noqa: S101
            self._order.insert(after)
            return ApplyOutcome.INSERTED
        if was_visible and not is_visible:
            assert before is not None  # noqa: S101
            self._order.remove(before.id)
            return ApplyOutcome.REMOVED
        if was_visible and is_visible:
            assert before is not None and after is not None  # noqa: S101
            if ordering_changed(before, after):
                self._order.reposition(after)
                return ApplyOutcome.REORDERED
        return ApplyOutcome.UPDATED
