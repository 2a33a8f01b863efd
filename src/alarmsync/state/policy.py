"""Deterministic merge and ordering policy.

This module intentionally contains *no* payload parsing. The envelope models
are responsible for producing validated alarms with UTC timestamps.
"""

from __future__ import annotations

from datetime import datetime

from alarmsync.models.alarm import Alarm

SortKey = tuple[int, datetime, int, str]


def should_accept_update(*, cached_updated_at: datetime, incoming_updated_at: datetime) -> bool:
    """Last-writer-wins; ties go to the incoming value (server is the source of truth)."""
    return incoming_updated_at >= cached_updated_at


def sort_key(alarm: Alarm) -> SortKey:
    """Key of the priority order.

    Precedence: priority descending, creation time ascending, unassigned
    ahead of assigned. The identifier makes the order total so two stores
    holding the same alarms always agree on it.
    """
    return (-alarm.priority, alarm.created_at, 1 if alarm.is_assigned else 0, alarm.id)


def ordering_changed(before: Alarm, after: Alarm) -> bool:
    return sort_key(before) != sort_key(after)


def tentative_matches(tentative: Alarm, confirmed: Alarm) -> bool:
    """Whether a confirmed alarm carries the outcome a local action asked for."""
    return tentative.status == confirmed.status and tentative.assigned_agent_id == confirmed.assigned_agent_id
