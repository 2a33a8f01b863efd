from __future__ import annotations

import json
from typing import Any

from alarmsync.dispatcher import EventDispatcher
from alarmsync.exceptions import EnvelopeValidationError
from alarmsync.models.alarm import Category
from alarmsync.models.envelope import AnyEnvelope, CreatedEnvelope
from alarmsync.state.events import ApplyOutcome, StoreChange, UpdateSource
from alarmsync.state.store import StackStore


def _message(seq: int = 1, *, category: str = "emergency", **alarm: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "id": f"alarm-{seq}",
        "priority": 2,
        "category": category,
        "status": "open",
        "assigned_agent_id": None,
        "created_at": "2026-01-01T00:00:00Z",
        "updated_at": "2026-01-01T00:00:00Z",
    }
    body.update(alarm)
    return {"type": "created", "seq_number": seq, "emitted_at": "2026-01-01T00:00:00Z", "alarm": body}


class _Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple[AnyEnvelope, UpdateSource]] = []

    def __call__(self, envelope: AnyEnvelope, source: UpdateSource) -> StoreChange | None:
        self.calls.append((envelope, source))
        return None


def _store_routes() -> dict[Category, Any]:
    stores = {category: StackStore(category) for category in Category}
    return {category: (lambda env, src, s=store: s.apply(env, source=src)) for category, store in stores.items()}


def test_valid_envelope_routed_by_category() -> None:
    routes = {category: _Recorder() for category in Category}
    dispatcher = EventDispatcher(routes)

    dispatcher.dispatch(_message(1, category="non_emergency"))

    assert routes[Category.EMERGENCY].calls == []
    assert routes[Category.HISTORY].calls == []
    ((envelope, source),) = routes[Category.NON_EMERGENCY].calls
    assert isinstance(envelope, CreatedEnvelope)
    assert envelope.alarm_id == "alarm-1"
    assert source == UpdateSource.LIVE


def test_dispatch_returns_store_change() -> None:
    dispatcher = EventDispatcher(_store_routes())

    change = dispatcher.dispatch(json.dumps(_message(1)))

    assert change is not None
    assert change.outcome == ApplyOutcome.INSERTED


def test_malformed_envelope_dropped_and_reported() -> None:
    route = _Recorder()
    errors: list[EnvelopeValidationError] = []
    dispatcher = EventDispatcher({Category.EMERGENCY: route}, on_error=errors.append)

    assert dispatcher.dispatch(_message(1, status="snoozed")) is None

    assert route.calls == []
    assert len(errors) == 1
    assert "status" in errors[0].reason


def test_assignment_invariant_is_validated() -> None:
    errors: list[EnvelopeValidationError] = []
    dispatcher = EventDispatcher({Category.EMERGENCY: _Recorder()}, on_error=errors.append)

    dispatcher.dispatch(_message(1, status="assigned"))

    assert len(errors) == 1


def test_undecodable_json_reported() -> None:
    errors: list[EnvelopeValidationError] = []
    dispatcher = EventDispatcher({Category.EMERGENCY: _Recorder()}, on_error=errors.append)

    assert dispatcher.dispatch(b"\xff{not-json") is None
    assert len(errors) == 1


def test_unroutable_category_rejected() -> None:
    errors: list[EnvelopeValidationError] = []
    dispatcher = EventDispatcher({Category.EMERGENCY: _Recorder()}, on_error=errors.append)

    dispatcher.dispatch(_message(1, category="history"))

    assert len(errors) == 1
    assert "history" in errors[0].reason


def test_reported_payload_is_redacted() -> None:
    errors: list[EnvelopeValidationError] = []
    dispatcher = EventDispatcher({Category.EMERGENCY: _Recorder()}, on_error=errors.append)

    payload = {**_message(1), "seq_number": "x", "token": "secret-token"}
    dispatcher.dispatch(payload)

    assert errors[0].raw["token"] == "<redacted>"


def test_error_listener_failure_does_not_propagate() -> None:
    def _boom(_error: EnvelopeValidationError) -> None:
        raise RuntimeError("listener failure")

    dispatcher = EventDispatcher({Category.EMERGENCY: _Recorder()}, on_error=_boom)

    assert dispatcher.dispatch({"type": "created"}) is None


def test_batch_validates_each_element() -> None:
    errors: list[EnvelopeValidationError] = []
    dispatcher = EventDispatcher(_store_routes(), on_error=errors.append)

    raw = json.dumps([_message(5), {"type": "created", "seq_number": 6}, _message(7)]).encode()
    changes = dispatcher.dispatch_batch(raw)

    assert [c.alarm_id for c in changes] == ["alarm-5", "alarm-7"]
    assert all(c.source == UpdateSource.BACKFILL for c in changes)
    assert len(errors) == 1


def test_batch_accepts_single_envelope() -> None:
    dispatcher = EventDispatcher(_store_routes())

    changes = dispatcher.dispatch_batch(_message(3))

    assert len(changes) == 1


def test_batch_with_undecodable_body() -> None:
    errors: list[EnvelopeValidationError] = []
    dispatcher = EventDispatcher(_store_routes(), on_error=errors.append)

    assert dispatcher.dispatch_batch("[{") == []
    assert len(errors) == 1


def test_out_of_range_epoch_timestamps_reported() -> None:
    route = _Recorder()
    errors: list[EnvelopeValidationError] = []
    dispatcher = EventDispatcher({Category.EMERGENCY: route}, on_error=errors.append)

    huge = _message(1, created_at=1e300)
    infinite = {**_message(2), "emitted_at": float("inf")}

    assert dispatcher.dispatch(json.dumps(huge)) is None
    # json.dumps writes the bare Infinity literal, which json.loads accepts.
    assert dispatcher.dispatch(json.dumps(infinite)) is None

    assert route.calls == []
    assert len(errors) == 2
    assert "created_at" in errors[0].reason
    assert "emitted_at" in errors[1].reason


def test_deeply_nested_json_reported() -> None:
    errors: list[EnvelopeValidationError] = []
    dispatcher = EventDispatcher(_store_routes(), on_error=errors.append)
    nested = "[" * 100_000 + "]" * 100_000

    assert dispatcher.dispatch(nested) is None
    assert dispatcher.dispatch_batch(nested.encode()) == []
    assert len(errors) == 2
