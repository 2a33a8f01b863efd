"""Custom exception hierarchy for alarmsync."""

from __future__ import annotations

from typing import Any


class AlarmSyncError(Exception):
    """Base exception for all alarmsync errors."""


class AlarmSyncConfigError(AlarmSyncError):
    """Invalid or missing configuration."""


class EnvelopeValidationError(AlarmSyncError):
    """Inbound envelope failed validation and was dropped.

    This error is never raised out of the dispatch path; it is handed to the
    caller's error listener so the protocol mismatch can be surfaced.
    """

    def __init__(
        self,
        message: str,
        *,
        reason: str = "",
        raw: Any = None,
    ) -> None:
        self.reason = reason
        self.raw = raw
        super().__init__(message)


class AlarmTransportError(AlarmSyncError):
    """The connection adapter could not send a message."""

    def __init__(self, message: str, *, category: str = "") -> None:
        self.category = category
        super().__init__(message)


class AlarmFallbackError(AlarmSyncError):
    """The fallback path failed to deliver an action (network, non-2xx)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class AlarmActionError(AlarmSyncError):
    """A locally-initiated action was rejected before touching any state."""

    def __init__(self, message: str, *, alarm_id: str = "") -> None:
        self.alarm_id = alarm_id
        super().__init__(message)


class UnknownAlarmError(AlarmActionError):
    """The alarm is not present (or no longer addressable) in its category."""


class InvalidTransitionError(AlarmActionError):
    """The requested status change is not allowed from the current status.

    ``closed`` is terminal, so every action on a closed alarm lands here or in
    :class:`UnknownAlarmError` once the closure has been confirmed.
    """
