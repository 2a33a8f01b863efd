"""Inbound envelope validation and routing.

The dispatcher holds no state of its own beyond the routing table. Malformed
messages are dropped and reported; they are never retried, since a payload
that fails validation once will fail again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from alarmsync._redact import redact_for_log
from alarmsync.exceptions import EnvelopeValidationError
from alarmsync.models.alarm import Category
from alarmsync.models.envelope import AnyEnvelope, decode_message, parse_envelope
from alarmsync.state.events import StoreChange, UpdateSource

_logger = logging.getLogger(__name__)

Route = Callable[[AnyEnvelope, UpdateSource], StoreChange | None]


def _summarize(exc: ValidationError) -> str:
    parts: list[str] = []
    for error in exc.errors()[:5]:
        location = ".".join(str(item) for item in error.get("loc", ())) or "<root>"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


class EventDispatcher:
    """Validates raw envelopes and forwards them to their category's pipeline."""

    def __init__(
        self,
        routes: Mapping[Category, Route],
        *,
        on_error: Callable[[EnvelopeValidationError], None] | None = None,
    ) -> None:
        self._routes = dict(routes)
        self._on_error = on_error

    def dispatch(self, message: Any, *, source: UpdateSource = UpdateSource.LIVE) -> StoreChange | None:
        """Validate and route one envelope.

        Returns the resulting store change, or ``None`` when the message was
        dropped (malformed) or discarded by the reconciler (duplicate).
        """
        try:
            envelope = parse_envelope(message)
        except ValidationError as exc:
            self._reject(message, "invalid envelope", _summarize(exc))
            return None
        except (ValueError, RecursionError) as exc:
            self._reject(message, "undecodable envelope", str(exc))
            return None

        route = self._routes.get(envelope.category)
        if route is None:
            self._reject(message, "unroutable envelope", f"no pipeline for category {envelope.category.value}")
            return None
        return route(envelope, source)

    def dispatch_batch(self, messages: Any, *, source: UpdateSource = UpdateSource.BACKFILL) -> list[StoreChange]:
        """Dispatch a backfill response: one envelope or an array of them.

        Each element is validated on its own; a malformed element does not
        drop its siblings.
        """
        try:
            decoded = decode_message(messages)
        except (ValueError, RecursionError) as exc:
            # RecursionError: nesting too deep for the JSON decoder.
            self._reject(messages, "undecodable backfill response", str(exc))
            return []

        items = decoded if isinstance(decoded, list) else [decoded]
        changes: list[StoreChange] = []
        for item in items:
            change = self.dispatch(item, source=source)
            if change is not None:
                changes.append(change)
        return changes

    def _reject(self, message: Any, summary: str, reason: str) -> None:
        _logger.warning("Dropping %s: %s", summary, reason)
        _logger.debug("Dropped payload: %s", redact_for_log(message))
        if self._on_error is None:
            return
        error = EnvelopeValidationError(f"{summary}: {reason}", reason=reason, raw=redact_for_log(message))
        try:
            self._on_error(error)
        except Exception:
            _logger.debug("on_validation_error callback failed", exc_info=True)
