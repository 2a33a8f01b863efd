"""Alarm entity, its enums and the status transition table."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field, model_validator

from alarmsync.models._base import AlarmSyncBaseModel, UtcTimestamp


class Category(StrEnum):
    """The three independent alarm stacks."""

    EMERGENCY = "emergency"
    NON_EMERGENCY = "non_emergency"
    HISTORY = "history"


class AlarmStatus(StrEnum):
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


#: Statuses that carry an assignee.
ASSIGNED_STATUSES: frozenset[AlarmStatus] = frozenset({AlarmStatus.ASSIGNED, AlarmStatus.IN_PROGRESS})

# Statuses reachable from each status through a local action.
# Nothing leaves CLOSED.
_TRANSITIONS: dict[AlarmStatus, frozenset[AlarmStatus]] = {
    AlarmStatus.OPEN: frozenset({AlarmStatus.ASSIGNED, AlarmStatus.CLOSED}),
    AlarmStatus.ASSIGNED: frozenset({AlarmStatus.IN_PROGRESS, AlarmStatus.CLOSED}),
    AlarmStatus.IN_PROGRESS: frozenset({AlarmStatus.CLOSED}),
    AlarmStatus.CLOSED: frozenset(),
}


def can_transition(current: AlarmStatus, target: AlarmStatus) -> bool:
    """Whether a local action may move an alarm from *current* to *target*."""
    return target in _TRANSITIONS[current]


class Alarm(AlarmSyncBaseModel):
    """A single security alarm as broadcast by the server.

    ``assigned_agent_id`` is required while the alarm is assigned or in
    progress and must be absent otherwise.
    """

    id: str = Field(..., min_length=1)
    priority: int
    category: Category
    status: AlarmStatus
    assigned_agent_id: str | None = None
    created_at: UtcTimestamp
    updated_at: UtcTimestamp

    @model_validator(mode="after")
    def _check_assignment(self) -> Alarm:
        if self.status in ASSIGNED_STATUSES:
            if not self.assigned_agent_id:
                raise ValueError(f"assigned_agent_id is required when status is {self.status.value}")
        elif self.assigned_agent_id is not None:
            raise ValueError(f"assigned_agent_id must be null when status is {self.status.value}")
        return self

    @property
    def is_assigned(self) -> bool:
        return self.assigned_agent_id is not None

    @property
    def is_closed(self) -> bool:
        return self.status == AlarmStatus.CLOSED
