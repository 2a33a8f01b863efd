"""High-level alarm console: three independent category pipelines."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from alarmsync.config import AlarmSyncConfig
from alarmsync.dispatcher import EventDispatcher
from alarmsync.exceptions import AlarmTransportError, EnvelopeValidationError
from alarmsync.models._base import utcnow
from alarmsync.models.alarm import Alarm, Category
from alarmsync.models.envelope import AlarmUpdateMessage, AnyEnvelope, BackfillRequest
from alarmsync.models.snapshot import AlarmView, AppState, ConnectionStatus, StackSnapshot, SyncState
from alarmsync.optimistic import OptimisticCoordinator
from alarmsync.state.events import StoreChange, UpdateSource
from alarmsync.state.store import StackStore
from alarmsync.sync.reconciler import SequenceReconciler
from alarmsync.sync.retry import Scheduler, loop_scheduler
from alarmsync.transport import ConnectionAdapter, FallbackSender

_logger = logging.getLogger(__name__)


class AlarmConsole:
    """Live console of security alarms.

    The console is the inbound end of a connection adapter (``deliver``,
    ``deliver_backfill``, ``on_disconnect``, ``on_reconnect``) and exposes
    ordered, merged alarm state per category. All methods must be called on
    the event loop thread; adapters that receive on another thread hop over
    with ``loop.call_soon_threadsafe``.

    Usage::

        async with AlarmConsole(config, adapter=adapter) as console:
            adapter.attach(console)
            ...
            await console.claim("alarm-1")

    Every category starts *disconnected*; the adapter reports the first
    connection through :meth:`on_reconnect`.
    """

    def __init__(
        self,
        config: AlarmSyncConfig,
        *,
        adapter: ConnectionAdapter | None = None,
        fallback: FallbackSender | None = None,
        active_category: Category = Category.EMERGENCY,
        initial_seqs: Mapping[Category, int] | None = None,
        on_change: Callable[[StoreChange], None] | None = None,
        on_degraded: Callable[[Category, frozenset[int]], None] | None = None,
        on_validation_error: Callable[[EnvelopeValidationError], None] | None = None,
        scheduler: Scheduler = loop_scheduler,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._adapter = adapter
        self._active_category = active_category
        self._on_change_cb = on_change
        self._on_degraded_cb = on_degraded
        self._loop: asyncio.AbstractEventLoop | None = None
        self._send_tasks: set[asyncio.Task[None]] = set()
        seqs = dict(initial_seqs or {})

        self._stores: dict[Category, StackStore] = {}
        self._reconcilers: dict[Category, SequenceReconciler] = {}
        for category in Category:
            store = StackStore(category, clock=clock)
            self._stores[category] = store
            self._reconcilers[category] = SequenceReconciler(
                store,
                request_backfill=self._request_backfill,
                policy=config.retry_policy(),
                batch_size=config.backfill_batch_size,
                max_gap=config.backfill_max_gap,
                scheduler=scheduler,
                on_degraded=self._on_degraded,
                initial_seq=seqs.get(category),
                connected=False,
            )

        self._dispatcher = EventDispatcher(
            {category: self._route for category in Category},
            on_error=on_validation_error,
        )
        self._coordinator = OptimisticCoordinator(
            agent_id=config.agent_id,
            stores=self._stores,
            send=self._send_update,
            is_connected=self.is_connected,
            fallback=fallback,
            clock=clock,
            on_change=self._notify,
        )

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> AlarmConsole:
        self._loop = asyncio.get_running_loop()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Cancel retry timers and in-flight backfill sends."""
        for reconciler in self._reconcilers.values():
            reconciler.teardown()
        tasks = list(self._send_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._send_tasks.clear()
        self._loop = None

    # ------------------------------------------------------------------
    # Connection adapter surface (inbound)
    # ------------------------------------------------------------------

    def deliver(self, message: Any) -> StoreChange | None:
        """Handle one live broadcast envelope (mapping or JSON)."""
        return self._dispatcher.dispatch(message, source=UpdateSource.LIVE)

    def deliver_backfill(self, messages: Any) -> list[StoreChange]:
        """Handle a private backfill response (one envelope or a JSON array)."""
        return self._dispatcher.dispatch_batch(messages, source=UpdateSource.BACKFILL)

    def on_disconnect(self, category: Category) -> None:
        reconciler = self._reconcilers[category]
        if not reconciler.connected:
            return
        _logger.info("Category %s disconnected; keeping %d alarm(s)", category.value, len(self._stores[category]))
        reconciler.disconnect()

    def on_reconnect(self, category: Category) -> None:
        reconciler = self._reconcilers[category]
        if reconciler.connected:
            return
        requests = reconciler.reconnect()
        _logger.info(
            "Category %s connected; forced reconciliation issued %d request(s)",
            category.value,
            len(requests),
        )

    # ------------------------------------------------------------------
    # Pipeline plumbing
    # ------------------------------------------------------------------

    def _route(self, envelope: AnyEnvelope, source: UpdateSource) -> StoreChange | None:
        change = self._reconcilers[envelope.category].receive(envelope, source=source)
        if change is not None:
            self._notify(change)
        return change

    def _notify(self, change: StoreChange) -> None:
        if change.reverted:
            _logger.info(
                "Optimistic change on alarm=%s superseded by confirmed state (agent=%s)",
                change.alarm_id,
                change.after.assigned_agent_id if change.after is not None else None,
            )
        if self._on_change_cb is None or not change.changed:
            return
        try:
            self._on_change_cb(change)
        except Exception:
            _logger.debug("on_change callback failed", exc_info=True)

    def _on_degraded(self, category: Category, unknown: frozenset[int]) -> None:
        if self._on_degraded_cb is None:
            return
        try:
            self._on_degraded_cb(category, unknown)
        except Exception:
            _logger.debug("on_degraded callback failed", exc_info=True)

    def _request_backfill(self, category: Category, request: BackfillRequest) -> None:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(self._send_backfill(category, request))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _send_backfill(self, category: Category, request: BackfillRequest) -> None:
        try:
            await self._send(category, request.to_wire())
        except Exception:
            # The retry timer re-issues whatever is still pending.
            _logger.warning("Backfill request for category=%s failed", category.value, exc_info=True)

    async def _send_update(self, category: Category, message: AlarmUpdateMessage) -> None:
        await self._send(category, message.to_wire())

    async def _send(self, category: Category, payload: Mapping[str, Any]) -> None:
        adapter = self._adapter
        if adapter is None:
            raise AlarmTransportError("no connection adapter configured", category=category.value)
        await adapter.send(category, payload)

    # ------------------------------------------------------------------
    # Local actions
    # ------------------------------------------------------------------

    async def claim(self, alarm_id: str, *, category: Category | None = None) -> Alarm:
        """Assign an alarm to the configured agent (optimistic)."""
        return await self._coordinator.claim(alarm_id, category=category)

    async def start_progress(self, alarm_id: str, *, category: Category | None = None) -> Alarm:
        """Mark an alarm assigned to this agent as in progress (optimistic)."""
        return await self._coordinator.start_progress(alarm_id, category=category)

    async def close_alarm(self, alarm_id: str, *, category: Category | None = None) -> Alarm:
        """Close an alarm (optimistic)."""
        return await self._coordinator.close(alarm_id, category=category)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def config(self) -> AlarmSyncConfig:
        return self._config

    @property
    def active_category(self) -> Category:
        return self._active_category

    def set_active_category(self, category: Category) -> None:
        self._active_category = category

    def store(self, category: Category) -> StackStore:
        return self._stores[category]

    def reconciler(self, category: Category) -> SequenceReconciler:
        return self._reconcilers[category]

    def is_connected(self, category: Category) -> bool:
        return self._reconcilers[category].connected

    def connection_status(self, category: Category) -> ConnectionStatus:
        reconciler = self._reconcilers[category]
        if not reconciler.connected:
            return ConnectionStatus.DISCONNECTED
        if reconciler.state in (SyncState.BACKFILLING, SyncState.GAP_DETECTED):
            return ConnectionStatus.BACKFILLING
        return ConnectionStatus.CONNECTED

    def alarms(self, category: Category) -> list[Alarm]:
        """Visible alarms of *category* in priority order."""
        return self._stores[category].alarms()

    def get(self, alarm_id: str, *, category: Category | None = None) -> Alarm | None:
        categories = [category] if category is not None else list(Category)
        for cat in categories:
            alarm = self._stores[cat].get(alarm_id)
            if alarm is not None:
                return alarm
        return None

    def snapshot(self, category: Category) -> StackSnapshot:
        store = self._stores[category]
        reconciler = self._reconcilers[category]
        views: list[AlarmView] = []
        for alarm in store.alarms():
            overlay = store.overlay(alarm.id)
            views.append(
                AlarmView(
                    alarm=alarm,
                    unconfirmed=overlay is not None,
                    via_fallback=overlay.via_fallback if overlay is not None else False,
                    unconfirmed_since=overlay.applied_at if overlay is not None else None,
                    based_on_updated_at=overlay.base_updated_at if overlay is not None else None,
                )
            )
        return StackSnapshot(
            category=category,
            alarms=views,
            last_seq=store.last_seq,
            unknown_seq_numbers=sorted(store.pending),
            sync_state=reconciler.state,
            connection=self.connection_status(category),
        )

    def view(self, category: Category | None = None) -> StackSnapshot:
        """Snapshot of *category*, defaulting to the active one."""
        return self.snapshot(category if category is not None else self._active_category)

    @property
    def app_state(self) -> AppState:
        return AppState(
            active_category=self._active_category,
            connections={category: self.connection_status(category) for category in Category},
            degraded={category: self._reconcilers[category].state == SyncState.DEGRADED for category in Category},
        )
