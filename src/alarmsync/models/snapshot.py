"""Read-only views handed to the rendering layer."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field

from alarmsync.models._base import AlarmSyncBaseModel, UtcTimestamp
from alarmsync.models.alarm import Alarm, Category


class SyncState(StrEnum):
    """Sequence reconciliation state of one category."""

    SYNCED = "synced"
    GAP_DETECTED = "gap_detected"
    BACKFILLING = "backfilling"
    DEGRADED = "degraded"


class ConnectionStatus(StrEnum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    BACKFILLING = "backfilling"


class AlarmView(AlarmSyncBaseModel):
    """An alarm as it should be rendered."""

    alarm: Alarm
    unconfirmed: bool = False
    via_fallback: bool = False
    # Set while unconfirmed: when the local action was taken and the
    # confirmed updated_at it was based on.
    unconfirmed_since: UtcTimestamp | None = None
    based_on_updated_at: UtcTimestamp | None = None


class StackSnapshot(AlarmSyncBaseModel):
    """Point-in-time view of one category, alarms in priority order.

    ``unknown_seq_numbers`` lists the sequence numbers still missing; once a
    category is degraded they are the entries the server never delivered.
    """

    category: Category
    alarms: list[AlarmView] = Field(default_factory=list)
    last_seq: int | None = None
    unknown_seq_numbers: list[int] = Field(default_factory=list)
    sync_state: SyncState = SyncState.SYNCED
    connection: ConnectionStatus = ConnectionStatus.DISCONNECTED

    @property
    def degraded(self) -> bool:
        return self.sync_state == SyncState.DEGRADED

    @property
    def alarm_ids(self) -> list[str]:
        return [view.alarm.id for view in self.alarms]


class AppState(AlarmSyncBaseModel):
    """Console-wide state: the viewed category and per-category connectivity.

    The active category only selects what :meth:`AlarmConsole.view` renders;
    every category keeps receiving and applying updates regardless.
    """

    active_category: Category = Category.EMERGENCY
    connections: dict[Category, ConnectionStatus] = Field(default_factory=dict)
    degraded: dict[Category, bool] = Field(default_factory=dict)
