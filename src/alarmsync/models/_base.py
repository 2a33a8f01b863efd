"""Base model and timestamp coercion for protocol payloads.

Every wire model inherits from :class:`AlarmSyncBaseModel`, which is frozen
and ignores unknown keys so that additive server-side schema changes do not
break validation.

Timestamps arrive either as ISO-8601 strings or as epoch numbers (seconds
**or** milliseconds). :data:`UtcTimestamp` normalizes all of them to
timezone-aware UTC datetimes so that comparisons between stored and incoming
values are always well-defined.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 100_000_000_000


def parse_timestamp(value: Any) -> Any:
    """Convert an epoch timestamp (seconds or milliseconds) to a UTC datetime.

    Strings and datetimes are passed through for pydantic to parse; anything
    else is left untouched so that pydantic reports the type error.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts >= _MS_THRESHOLD:
            ts /= 1000.0
        try:
            return datetime.fromtimestamp(ts, tz=UTC)
        except (OverflowError, OSError, ValueError) as exc:
            # Out of range or not finite; pydantic reports ValueError as a validation error.
            raise ValueError(f"epoch timestamp out of range: {value!r}") from exc
    return value


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UtcTimestamp = Annotated[datetime, BeforeValidator(parse_timestamp), AfterValidator(ensure_utc)]
"""Annotated type that coerces ISO strings and epoch numbers to UTC datetimes."""


def utcnow() -> datetime:
    return datetime.now(UTC)


class AlarmSyncBaseModel(BaseModel):
    """Base for all wire and snapshot models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        str_strip_whitespace=True,
    )
