"""Per-category sequence gap detection and backfill.

The reconciler sits between the dispatcher and a category's
:class:`~alarmsync.state.store.StackStore`. It owns the store's sequence
cursor (``last_seq`` and ``pending``), decides which envelopes to apply, and
drives backfill requests through a :class:`~alarmsync.sync.retry.RetryTimer`.

Requests are handed to ``request_backfill`` synchronously; the callback is
expected to schedule the actual send and return immediately, so that gap
handling never blocks processing of live events.

The retry budget is counted per sequence number. A number that has been
re-requested ``max_attempts`` times is given up on and marks the category
degraded; gaps opened later do not renew its budget. Only a reconnect does.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from alarmsync._constants import BACKFILL_MAX_GAP
from alarmsync.models.alarm import Category
from alarmsync.models.envelope import AnyEnvelope, BackfillRequest
from alarmsync.models.snapshot import SyncState
from alarmsync.state.events import StoreChange, UpdateSource
from alarmsync.state.store import StackStore
from alarmsync.sync.retry import BackfillRetryPolicy, RetryTimer, Scheduler, loop_scheduler

_logger = logging.getLogger(__name__)


class SequenceReconciler:
    """Sequence cursor and backfill driver for one category."""

    def __init__(
        self,
        store: StackStore,
        *,
        request_backfill: Callable[[Category, BackfillRequest], None],
        policy: BackfillRetryPolicy | None = None,
        batch_size: int = 500,
        scheduler: Scheduler = loop_scheduler,
        on_degraded: Callable[[Category, frozenset[int]], None] | None = None,
        initial_seq: int | None = None,
        connected: bool = True,
        max_gap: int = BACKFILL_MAX_GAP,
    ) -> None:
        if max_gap < 1:
            raise ValueError(f"max_gap must be >= 1, got {max_gap}")
        policy = policy or BackfillRetryPolicy()
        self._store = store
        self._request_backfill = request_backfill
        self._batch_size = batch_size
        self._on_degraded = on_degraded
        self._connected = connected
        self._max_gap = max_gap
        self._max_attempts = policy.max_attempts
        # Retries sent per pending sequence number.
        self._retries: dict[int, int] = {}
        # Pending numbers whose retry budget is spent.
        self._unknown: set[int] = set()
        self._timer = RetryTimer(
            policy,
            on_retry=self._on_retry,
            on_exhausted=self._on_exhausted,
            scheduler=scheduler,
        )
        if initial_seq is not None:
            store.last_seq = initial_seq

    @property
    def category(self) -> Category:
        return self._store.category

    @property
    def store(self) -> StackStore:
        return self._store

    @property
    def last_seq(self) -> int | None:
        return self._store.last_seq

    @property
    def pending(self) -> frozenset[int]:
        return frozenset(self._store.pending)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def retrying(self) -> bool:
        return self._timer.active

    @property
    def unknown(self) -> frozenset[int]:
        """Pending numbers that are no longer requested."""
        return frozenset(self._unknown)

    def retries(self, seq: int) -> int:
        return self._retries.get(seq, 0)

    @property
    def state(self) -> SyncState:
        if not self._store.pending:
            return SyncState.SYNCED
        if self._unknown:
            return SyncState.DEGRADED
        if self._timer.active:
            return SyncState.BACKFILLING
        return SyncState.GAP_DETECTED

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def receive(self, envelope: AnyEnvelope, *, source: UpdateSource = UpdateSource.LIVE) -> StoreChange | None:
        """Run *envelope* through the sequence check and apply it if due.

        Returns ``None`` for duplicate or stale re-deliveries.
        """
        store = self._store
        seq = envelope.seq_number
        last = store.last_seq

        if last is None:
            # First envelope ever seen establishes the cursor.
            store.last_seq = seq
            return self._apply(envelope, source)

        if seq == last + 1:
            store.last_seq = seq
            return self._apply(envelope, source)

        if seq > last + 1:
            gap = range(last + 1, seq)
            if len(gap) > self._max_gap:
                _logger.warning(
                    "Sequence jump category=%s last_seq=%d seq=%d exceeds max_gap=%d; "
                    "giving up on %d..%d",
                    self.category.value,
                    last,
                    seq,
                    self._max_gap,
                    gap.start,
                    seq - self._max_gap - 1,
                )
                gap = range(seq - self._max_gap, seq)
            store.pending.update(gap)
            store.last_seq = seq
            _logger.debug(
                "Sequence gap category=%s missing=%d..%d pending=%d",
                self.category.value,
                gap.start,
                gap.stop - 1,
                len(store.pending),
            )
            change = self._apply(envelope, source)
            if self._connected:
                self._issue(gap)
                # A running timer keeps its schedule; budgets are per number.
                if not self._timer.active:
                    self._timer.start()
            return change

        if seq in store.pending:
            store.pending.discard(seq)
            self._retries.pop(seq, None)
            was_degraded = bool(self._unknown)
            self._unknown.discard(seq)
            change = self._apply(envelope, source)
            if not store.pending:
                self._resolved(was_degraded)
            elif was_degraded and not self._unknown:
                _logger.info("Category %s recovered from degraded state", self.category.value)
            return change

        _logger.debug(
            "Dropping duplicate seq=%d category=%s last_seq=%d source=%s",
            seq,
            self.category.value,
            last,
            source.value,
        )
        return None

    def _apply(self, envelope: AnyEnvelope, source: UpdateSource) -> StoreChange:
        change = self._store.apply(envelope, source=source)
        _logger.debug(
            "Applied seq=%d category=%s alarm=%s outcome=%s",
            envelope.seq_number,
            self.category.value,
            envelope.alarm_id,
            change.outcome.value,
        )
        return change

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    def _issue(self, seq_numbers: Iterable[int]) -> list[BackfillRequest]:
        requests = BackfillRequest.batched(seq_numbers, self._batch_size)
        for request in requests:
            _logger.debug(
                "Requesting backfill category=%s seq_numbers=%s",
                self.category.value,
                request.seq_numbers,
            )
            self._request_backfill(self.category, request)
        return requests

    def _retryable(self) -> list[int]:
        return sorted(
            seq
            for seq in self._store.pending
            if seq not in self._unknown and self._retries.get(seq, 0) < self._max_attempts
        )

    def _give_up_spent(self) -> None:
        """Move numbers whose last retry went unanswered to ``unknown``."""
        spent = {
            seq
            for seq in self._store.pending
            if seq not in self._unknown and self._retries.get(seq, 0) >= self._max_attempts
        }
        if not spent:
            return
        self._unknown.update(spent)
        unknown = frozenset(self._unknown)
        _logger.warning(
            "Backfill exhausted for category=%s; %d sequence number(s) remain unknown",
            self.category.value,
            len(unknown),
        )
        if self._on_degraded is not None:
            try:
                self._on_degraded(self.category, unknown)
            except Exception:
                _logger.debug("on_degraded callback failed", exc_info=True)

    def _on_retry(self, attempt: int) -> None:
        if not self._store.pending:
            self._timer.cancel()
            return
        self._give_up_spent()
        retryable = self._retryable()
        if not retryable:
            self._timer.cancel()
            return
        _logger.debug(
            "Backfill retry %d category=%s retrying=%d pending=%d",
            attempt,
            self.category.value,
            len(retryable),
            len(self._store.pending),
        )
        for seq in retryable:
            self._retries[seq] = self._retries.get(seq, 0) + 1
        self._issue(retryable)

    def _on_exhausted(self) -> None:
        self._give_up_spent()
        if self._connected and self._retryable():
            # Numbers from later gaps still have budget left.
            self._timer.start()

    def _resolved(self, was_degraded: bool) -> None:
        self._timer.cancel()
        self._retries.clear()
        self._unknown.clear()
        if was_degraded:
            _logger.info("Category %s recovered from degraded state", self.category.value)
        _logger.debug("Backfill complete category=%s last_seq=%s", self.category.value, self._store.last_seq)

    def force_reconcile(self) -> list[BackfillRequest]:
        """Re-request everything still pending with a fresh attempt budget."""
        self._retries.clear()
        self._unknown.clear()
        if not self._store.pending:
            self._timer.cancel()
            return []
        requests = self._issue(self._store.pending)
        self._timer.start()
        return requests

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def disconnect(self) -> None:
        """Suspend retries; state is retained as-is."""
        self._connected = False
        self._timer.cancel()

    def reconnect(self) -> list[BackfillRequest]:
        """Mark connected and run the forced reconciliation pass."""
        self._connected = True
        return self.force_reconcile()

    def teardown(self) -> None:
        self._timer.cancel()
