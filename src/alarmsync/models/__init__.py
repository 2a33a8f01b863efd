"""Wire and view models."""

from alarmsync.models.alarm import ASSIGNED_STATUSES, Alarm, AlarmStatus, Category, can_transition
from alarmsync.models.envelope import (
    AlarmPatch,
    AlarmUpdateMessage,
    AnyEnvelope,
    BackfillRequest,
    ClosedEnvelope,
    CreatedEnvelope,
    Envelope,
    EventType,
    UpdatedEnvelope,
    parse_envelope,
)
from alarmsync.models.snapshot import AlarmView, AppState, ConnectionStatus, StackSnapshot, SyncState

__all__ = [
    "ASSIGNED_STATUSES",
    "Alarm",
    "AlarmPatch",
    "AlarmStatus",
    "AlarmUpdateMessage",
    "AlarmView",
    "AnyEnvelope",
    "AppState",
    "BackfillRequest",
    "Category",
    "ClosedEnvelope",
    "ConnectionStatus",
    "CreatedEnvelope",
    "Envelope",
    "EventType",
    "StackSnapshot",
    "SyncState",
    "UpdatedEnvelope",
    "can_transition",
    "parse_envelope",
]
