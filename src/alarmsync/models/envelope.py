"""Protocol envelopes.

Inbound broadcast (and backfill response) envelopes form a tagged union on
``type``. Parsing goes through a single :class:`pydantic.TypeAdapter` so that
an envelope is either one of the three concrete classes or a validation error;
downstream code matches on the class, never on raw dict keys.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import Field, TypeAdapter, field_validator

from alarmsync.models._base import AlarmSyncBaseModel, UtcTimestamp, utcnow
from alarmsync.models.alarm import ASSIGNED_STATUSES, Alarm, AlarmStatus, Category


class EventType(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    CLOSED = "closed"


class _EnvelopeBase(AlarmSyncBaseModel):
    seq_number: int = Field(..., ge=0)
    emitted_at: UtcTimestamp
    alarm: Alarm

    @property
    def category(self) -> Category:
        return self.alarm.category

    @property
    def alarm_id(self) -> str:
        return self.alarm.id


class CreatedEnvelope(_EnvelopeBase):
    type: Literal["created"] = "created"


class UpdatedEnvelope(_EnvelopeBase):
    type: Literal["updated"] = "updated"


class ClosedEnvelope(_EnvelopeBase):
    type: Literal["closed"] = "closed"


AnyEnvelope = CreatedEnvelope | UpdatedEnvelope | ClosedEnvelope

Envelope = Annotated[AnyEnvelope, Field(discriminator="type")]

_ENVELOPE_ADAPTER: TypeAdapter[AnyEnvelope] = TypeAdapter(Envelope)


def decode_message(message: Any) -> Any:
    """Decode a JSON ``str``/``bytes`` message; other values pass through."""
    if isinstance(message, (bytes, bytearray)):
        message = message.decode("utf-8")
    if isinstance(message, str):
        return json.loads(message)
    return message


def parse_envelope(message: Any) -> AnyEnvelope:
    """Validate *message* (mapping or JSON document) into a concrete envelope.

    Raises :class:`pydantic.ValidationError`, or :class:`ValueError` for
    undecodable JSON.
    """
    return _ENVELOPE_ADAPTER.validate_python(decode_message(message))


# ------------------------------------------------------------------
# Outbound messages
# ------------------------------------------------------------------


class AlarmPatch(AlarmSyncBaseModel):
    """Alarm fields carried by an outbound public update."""

    id: str = Field(..., min_length=1)
    status: AlarmStatus
    assigned_agent_id: str | None = None
    # Advisory only; the server's broadcast value is authoritative.
    updated_at: UtcTimestamp = Field(default_factory=utcnow)

    @field_validator("status")
    @classmethod
    def _not_open(cls, value: AlarmStatus) -> AlarmStatus:
        if value == AlarmStatus.OPEN:
            raise ValueError("outbound updates cannot reopen an alarm")
        return value

    @classmethod
    def from_alarm(cls, alarm: Alarm) -> AlarmPatch:
        return cls(
            id=alarm.id,
            status=alarm.status,
            assigned_agent_id=alarm.assigned_agent_id if alarm.status in ASSIGNED_STATUSES else None,
            updated_at=alarm.updated_at,
        )


class AlarmUpdateMessage(AlarmSyncBaseModel):
    """Outbound public update ``{type: updated|closed, alarm: {...}}``."""

    type: Literal["updated", "closed"]
    alarm: AlarmPatch

    @classmethod
    def for_alarm(cls, alarm: Alarm) -> AlarmUpdateMessage:
        kind = EventType.CLOSED if alarm.is_closed else EventType.UPDATED
        return cls(type=kind.value, alarm=AlarmPatch.from_alarm(alarm))

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class BackfillRequest(AlarmSyncBaseModel):
    """Outbound private request ``{type: request_alarms, seq_numbers: [...]}``."""

    type: Literal["request_alarms"] = "request_alarms"
    seq_numbers: list[int] = Field(..., min_length=1)

    @field_validator("seq_numbers")
    @classmethod
    def _sorted_unique(cls, value: list[int]) -> list[int]:
        return sorted(set(value))

    @classmethod
    def batched(cls, seq_numbers: Iterable[int], batch_size: int) -> list[BackfillRequest]:
        """Split *seq_numbers* into ascending requests of at most *batch_size*."""
        ordered = sorted(set(seq_numbers))
        return [cls(seq_numbers=ordered[i : i + batch_size]) for i in range(0, len(ordered), batch_size)]

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
