from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

import pytest

from alarmsync.config import AlarmSyncConfig
from alarmsync.console import AlarmConsole
from alarmsync.exceptions import AlarmTransportError, EnvelopeValidationError
from alarmsync.models.alarm import AlarmStatus, Category
from alarmsync.models.envelope import AlarmUpdateMessage
from alarmsync.models.snapshot import ConnectionStatus, SyncState
from alarmsync.state.events import StoreChange


class _Handle:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback: Callable[[], None] | None = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _FakeScheduler:
    def __init__(self) -> None:
        self.handles: list[_Handle] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> _Handle:
        handle = _Handle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def live(self) -> list[_Handle]:
        return [h for h in self.handles if not h.cancelled and h.callback is not None]

    def run_all(self) -> None:
        while self.live:
            handle = self.live[0]
            callback = handle.callback
            handle.callback = None
            assert callback is not None
            callback()


class _FakeAdapter:
    def __init__(self) -> None:
        self.sent: list[tuple[Category, dict[str, Any]]] = []
        self.fail = False
        self.error: Exception | None = None

    async def send(self, category: Category, message: Mapping[str, Any]) -> None:
        if self.fail:
            raise AlarmTransportError("offline", category=category.value)
        if self.error is not None:
            raise self.error
        self.sent.append((category, dict(message)))

    def requests(self, category: Category) -> list[list[int]]:
        return [m["seq_numbers"] for c, m in self.sent if c == category and m["type"] == "request_alarms"]


class _FakeFallback:
    def __init__(self) -> None:
        self.sent: list[tuple[Category, AlarmUpdateMessage]] = []

    async def send_update(self, category: Category, message: AlarmUpdateMessage) -> None:
        self.sent.append((category, message))


def _envelope(
    seq: int,
    alarm_id: str,
    *,
    kind: str = "created",
    category: str = "emergency",
    priority: int = 1,
    status: str = "open",
    agent: str | None = None,
    updated: int = 0,
) -> dict[str, Any]:
    return {
        "type": kind,
        "seq_number": seq,
        "emitted_at": 1767225600 + updated,
        "alarm": {
            "id": alarm_id,
            "priority": priority,
            "category": category,
            "status": status,
            "assigned_agent_id": agent,
            "created_at": 1767225600,
            "updated_at": 1767225600 + updated,
        },
    }


def _console(
    *,
    adapter: _FakeAdapter | None = None,
    fallback: _FakeFallback | None = None,
    max_attempts: int = 2,
    **kwargs: Any,
) -> tuple[AlarmConsole, _FakeAdapter, _FakeScheduler]:
    adapter = adapter or _FakeAdapter()
    scheduler = _FakeScheduler()
    config = AlarmSyncConfig(agent_id="agent-a", backfill_max_attempts=max_attempts)
    console = AlarmConsole(
        config,
        adapter=adapter,
        fallback=fallback,
        scheduler=scheduler,
        initial_seqs={category: 0 for category in Category},
        **kwargs,
    )
    return console, adapter, scheduler


_ACTION_TIME = datetime(2026, 1, 1, 0, 5, tzinfo=UTC)


@pytest.mark.asyncio
async def test_categories_start_disconnected() -> None:
    console, _, _ = _console()
    async with console:
        state = console.app_state
        assert state.active_category == Category.EMERGENCY
        assert set(state.connections.values()) == {ConnectionStatus.DISCONNECTED}

        console.on_reconnect(Category.EMERGENCY)
        assert console.connection_status(Category.EMERGENCY) == ConnectionStatus.CONNECTED
        assert console.connection_status(Category.HISTORY) == ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_live_envelopes_render_in_priority_order() -> None:
    console, _, _ = _console()
    async with console:
        console.on_reconnect(Category.EMERGENCY)
        console.deliver(_envelope(1, "a", priority=1))
        console.deliver(json.dumps(_envelope(2, "b", priority=9)))
        console.deliver(json.dumps(_envelope(3, "c", priority=5)).encode())

        snapshot = console.view()

        assert snapshot.alarm_ids == ["b", "c", "a"]
        assert snapshot.last_seq == 3
        assert snapshot.sync_state == SyncState.SYNCED
        assert [a.id for a in console.alarms(Category.EMERGENCY)] == ["b", "c", "a"]


@pytest.mark.asyncio
async def test_gap_backfill_roundtrip() -> None:
    console, adapter, scheduler = _console()
    async with console:
        console.on_reconnect(Category.EMERGENCY)
        console.deliver(_envelope(1, "a"))
        console.deliver(_envelope(4, "d"))
        await asyncio.sleep(0)

        assert adapter.requests(Category.EMERGENCY) == [[2, 3]]
        assert console.connection_status(Category.EMERGENCY) == ConnectionStatus.BACKFILLING
        assert console.view().unknown_seq_numbers == [2, 3]

        response = json.dumps([_envelope(3, "c"), _envelope(2, "b")]).encode()
        changes = console.deliver_backfill(response)

        assert len(changes) == 2
        assert console.connection_status(Category.EMERGENCY) == ConnectionStatus.CONNECTED
        assert console.view().alarm_ids == ["a", "b", "c", "d"]
        assert scheduler.live == []


@pytest.mark.asyncio
async def test_exhausted_backfill_marks_category_degraded() -> None:
    degraded: list[tuple[Category, frozenset[int]]] = []
    console, adapter, scheduler = _console(
        max_attempts=1,
        on_degraded=lambda category, unknown: degraded.append((category, unknown)),
    )
    async with console:
        console.on_reconnect(Category.NON_EMERGENCY)
        console.deliver(_envelope(3, "n3", category="non_emergency"))
        scheduler.run_all()
        await asyncio.sleep(0)

        assert degraded == [(Category.NON_EMERGENCY, frozenset({1, 2}))]
        assert console.app_state.degraded[Category.NON_EMERGENCY]
        assert not console.app_state.degraded[Category.EMERGENCY]
        snapshot = console.snapshot(Category.NON_EMERGENCY)
        assert snapshot.degraded
        assert snapshot.unknown_seq_numbers == [1, 2]
        assert snapshot.alarm_ids == ["n3"]
        assert console.connection_status(Category.NON_EMERGENCY) == ConnectionStatus.CONNECTED
        assert adapter.requests(Category.NON_EMERGENCY) == [[1, 2], [1, 2]]


@pytest.mark.asyncio
async def test_reconnect_reissues_pending_requests() -> None:
    console, adapter, _ = _console()
    async with console:
        console.on_reconnect(Category.EMERGENCY)
        console.deliver(_envelope(1, "a"))
        console.on_disconnect(Category.EMERGENCY)
        console.deliver(_envelope(3, "c"))
        await asyncio.sleep(0)

        assert adapter.requests(Category.EMERGENCY) == []
        assert console.connection_status(Category.EMERGENCY) == ConnectionStatus.DISCONNECTED
        # State retained while offline.
        assert console.view().alarm_ids == ["a", "c"]

        console.on_reconnect(Category.EMERGENCY)
        await asyncio.sleep(0)

        assert adapter.requests(Category.EMERGENCY) == [[2]]


@pytest.mark.asyncio
async def test_backfill_send_failure_is_not_fatal() -> None:
    adapter = _FakeAdapter()
    adapter.fail = True
    console, _, scheduler = _console(adapter=adapter)
    async with console:
        console.on_reconnect(Category.EMERGENCY)
        console.deliver(_envelope(5, "e"))
        await asyncio.sleep(0)

        assert console.reconciler(Category.EMERGENCY).pending == {1, 2, 3, 4}
        assert len(scheduler.live) == 1


@pytest.mark.asyncio
async def test_unexpected_backfill_send_error_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    adapter = _FakeAdapter()
    adapter.error = RuntimeError("adapter bug")
    console, _, scheduler = _console(adapter=adapter)
    async with console:
        console.on_reconnect(Category.EMERGENCY)
        with caplog.at_level(logging.WARNING, logger="alarmsync.console"):
            console.deliver(_envelope(3, "c"))
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        assert "Backfill request for category=emergency failed" in caplog.text
        assert "adapter bug" in caplog.text
        assert console.reconciler(Category.EMERGENCY).pending == {1, 2}
        assert len(scheduler.live) == 1


@pytest.mark.asyncio
async def test_claim_and_conflicting_confirmation() -> None:
    changes: list[StoreChange] = []
    console, adapter, _ = _console(on_change=changes.append, clock=lambda: _ACTION_TIME)
    async with console:
        console.on_reconnect(Category.EMERGENCY)
        console.deliver(_envelope(1, "x", priority=3))

        await console.claim("x")

        view = console.view()
        assert view.alarms[0].unconfirmed
        assert view.alarms[0].unconfirmed_since == _ACTION_TIME
        assert view.alarms[0].based_on_updated_at == datetime(2026, 1, 1, tzinfo=UTC)
        assert view.alarms[0].alarm.assigned_agent_id == "agent-a"
        ((category, message),) = [(c, m) for c, m in adapter.sent if m["type"] != "request_alarms"]
        assert category == Category.EMERGENCY
        assert message["alarm"]["status"] == "assigned"

        console.deliver(_envelope(2, "x", kind="updated", status="assigned", agent="agent-b", updated=1))

        alarm = console.get("x")
        assert alarm is not None
        assert alarm.assigned_agent_id == "agent-b"
        assert not console.view().alarms[0].unconfirmed
        assert console.view().alarms[0].unconfirmed_since is None
        assert changes[-1].reverted


@pytest.mark.asyncio
async def test_disconnected_claim_uses_fallback() -> None:
    fallback = _FakeFallback()
    console, adapter, _ = _console(fallback=fallback)
    async with console:
        console.on_reconnect(Category.EMERGENCY)
        console.deliver(_envelope(1, "x"))
        console.on_disconnect(Category.EMERGENCY)

        await console.close_alarm("x")

        assert adapter.sent == []
        assert len(fallback.sent) == 1
        assert console.view().alarm_ids == []
        assert console.store(Category.EMERGENCY).overlay("x").via_fallback

        # The server's closure arrives after reconnecting.
        console.on_reconnect(Category.EMERGENCY)
        console.deliver(_envelope(2, "x", kind="closed", status="closed", updated=2))

        assert console.get("x") is None
        assert console.store(Category.EMERGENCY).is_closed("x")


@pytest.mark.asyncio
async def test_start_progress_through_console() -> None:
    console, _, _ = _console()
    async with console:
        console.on_reconnect(Category.EMERGENCY)
        console.deliver(_envelope(1, "x", status="assigned", agent="agent-a"))

        alarm = await console.start_progress("x")

        assert alarm.status == AlarmStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_malformed_envelope_reported() -> None:
    errors: list[EnvelopeValidationError] = []
    console, _, _ = _console(on_validation_error=errors.append)
    async with console:
        assert console.deliver({"type": "created", "seq_number": 1}) is None

        assert len(errors) == 1
        assert console.view().alarm_ids == []
        assert console.view().last_seq == 0


@pytest.mark.asyncio
async def test_listener_failure_does_not_break_pipeline() -> None:
    def _boom(_change: StoreChange) -> None:
        raise RuntimeError("listener failure")

    console, _, _ = _console(on_change=_boom)
    async with console:
        console.deliver(_envelope(1, "a"))
        console.deliver(_envelope(2, "b"))

        assert console.view().alarm_ids == ["a", "b"]


@pytest.mark.asyncio
async def test_active_category_only_selects_the_view() -> None:
    console, _, _ = _console()
    async with console:
        console.deliver(_envelope(1, "h", category="history"))
        console.deliver(_envelope(1, "e", category="emergency"))

        assert console.view().alarm_ids == ["e"]
        console.set_active_category(Category.HISTORY)
        assert console.active_category == Category.HISTORY
        assert console.view().alarm_ids == ["h"]
        assert console.view(Category.EMERGENCY).alarm_ids == ["e"]
        assert console.app_state.active_category == Category.HISTORY


@pytest.mark.asyncio
async def test_close_cancels_retry_timers() -> None:
    console, _, scheduler = _console()
    async with console:
        console.on_reconnect(Category.EMERGENCY)
        console.deliver(_envelope(3, "c"))
        assert len(scheduler.live) == 1

    assert scheduler.live == []
