"""Locally-initiated alarm actions with optimistic display.

Each action builds a tentative alarm, overlays it on the category's store so
it renders immediately, then sends the public update. Confirmation needs no
handling here: the server's broadcast runs through the normal reconciler path
and any accepted confirmed value replaces the overlay.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime

from alarmsync.exceptions import (
    AlarmFallbackError,
    AlarmTransportError,
    InvalidTransitionError,
    UnknownAlarmError,
)
from alarmsync.models._base import utcnow
from alarmsync.models.alarm import Alarm, AlarmStatus, Category, can_transition
from alarmsync.models.envelope import AlarmUpdateMessage
from alarmsync.state.events import StoreChange
from alarmsync.state.store import StackStore
from alarmsync.transport import FallbackSender

_logger = logging.getLogger(__name__)


class OptimisticCoordinator:
    """Applies tentative changes and routes them to the transport or fallback."""

    def __init__(
        self,
        *,
        agent_id: str,
        stores: Mapping[Category, StackStore],
        send: Callable[[Category, AlarmUpdateMessage], Awaitable[None]],
        is_connected: Callable[[Category], bool],
        fallback: FallbackSender | None = None,
        clock: Callable[[], datetime] = utcnow,
        on_change: Callable[[StoreChange], None] | None = None,
    ) -> None:
        self._agent_id = agent_id
        self._stores = dict(stores)
        self._send = send
        self._is_connected = is_connected
        self._fallback = fallback
        self._clock = clock
        self._on_change = on_change

    @property
    def agent_id(self) -> str:
        return self._agent_id

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def claim(self, alarm_id: str, *, category: Category | None = None) -> Alarm:
        """Assign an open alarm to the local agent."""
        store, current = self._locate(alarm_id, category)
        if current.status == AlarmStatus.ASSIGNED and current.assigned_agent_id != self._agent_id:
            raise InvalidTransitionError(
                f"alarm {alarm_id} is already assigned to {current.assigned_agent_id}",
                alarm_id=alarm_id,
            )
        self._check_transition(current, AlarmStatus.ASSIGNED)
        tentative = self._tentative(current, AlarmStatus.ASSIGNED, self._agent_id)
        return await self._submit(store, tentative)

    async def start_progress(self, alarm_id: str, *, category: Category | None = None) -> Alarm:
        """Move an alarm assigned to the local agent to in_progress."""
        store, current = self._locate(alarm_id, category)
        self._check_transition(current, AlarmStatus.IN_PROGRESS)
        if current.assigned_agent_id != self._agent_id:
            raise InvalidTransitionError(
                f"alarm {alarm_id} is assigned to {current.assigned_agent_id}, not {self._agent_id}",
                alarm_id=alarm_id,
            )
        tentative = self._tentative(current, AlarmStatus.IN_PROGRESS, self._agent_id)
        return await self._submit(store, tentative)

    async def close(self, alarm_id: str, *, category: Category | None = None) -> Alarm:
        """Close an alarm. The alarm is hidden until the server confirms."""
        store, current = self._locate(alarm_id, category)
        self._check_transition(current, AlarmStatus.CLOSED)
        tentative = self._tentative(current, AlarmStatus.CLOSED, None)
        return await self._submit(store, tentative)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _locate(self, alarm_id: str, category: Category | None) -> tuple[StackStore, Alarm]:
        if category is not None:
            candidates = [self._stores[category]]
        else:
            candidates = list(self._stores.values())
        for store in candidates:
            alarm = store.get(alarm_id)
            if alarm is not None:
                return store, alarm
        raise UnknownAlarmError(f"alarm {alarm_id} is not known", alarm_id=alarm_id)

    @staticmethod
    def _check_transition(current: Alarm, target: AlarmStatus) -> None:
        if not can_transition(current.status, target):
            raise InvalidTransitionError(
                f"alarm {current.id} cannot go from {current.status.value} to {target.value}",
                alarm_id=current.id,
            )

    def _tentative(self, current: Alarm, status: AlarmStatus, agent_id: str | None) -> Alarm:
        # Never move updated_at backwards, even with a lagging local clock.
        updated_at = max(self._clock(), current.updated_at)
        return Alarm.model_validate(
            {
                **current.model_dump(),
                "status": status,
                "assigned_agent_id": agent_id,
                "updated_at": updated_at,
            }
        )

    async def _submit(self, store: StackStore, tentative: Alarm) -> Alarm:
        category = store.category
        self._notify(store.apply_optimistic(tentative))
        message = AlarmUpdateMessage.for_alarm(tentative)

        if self._is_connected(category):
            try:
                await self._send(category, message)
                _logger.debug(
                    "Sent %s for alarm=%s category=%s",
                    message.alarm.status.value,
                    tentative.id,
                    category.value,
                )
                return tentative
            except AlarmTransportError:
                _logger.warning(
                    "Transport send failed for alarm=%s category=%s; using fallback",
                    tentative.id,
                    category.value,
                    exc_info=True,
                )

        await self._send_fallback(store, message)
        return tentative

    async def _send_fallback(self, store: StackStore, message: AlarmUpdateMessage) -> None:
        alarm_id = message.alarm.id
        category = store.category
        if self._fallback is None:
            self._rollback(store, alarm_id)
            raise AlarmFallbackError(f"no fallback configured; action on alarm {alarm_id} not delivered")
        try:
            await self._fallback.send_update(category, message)
        except AlarmFallbackError:
            self._rollback(store, alarm_id)
            raise
        store.mark_via_fallback(alarm_id)
        _logger.info("Action on alarm=%s category=%s issued via fallback", alarm_id, category.value)

    def _rollback(self, store: StackStore, alarm_id: str) -> None:
        change = store.discard_optimistic(alarm_id)
        if change is not None:
            _logger.warning("Rolled back optimistic change for alarm=%s", alarm_id)
            self._notify(change)

    def _notify(self, change: StoreChange) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(change)
        except Exception:
            _logger.debug("on_change callback failed", exc_info=True)
