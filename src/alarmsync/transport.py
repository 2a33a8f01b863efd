"""Structural interfaces of the external collaborators.

The engine never imports a concrete transport. Anything with the right shape
can be passed in, which also makes it easy to use simple fakes in tests. The
bundled :mod:`alarmsync._mqtt` and :mod:`alarmsync._fallback` modules are
reference implementations.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from alarmsync.models.alarm import Category
from alarmsync.models.envelope import AlarmUpdateMessage


class ConnectionAdapter(Protocol):
    """Outbound half of the connection adapter.

    ``send`` publishes either a public alarm update or a private backfill
    request for *category*. It must raise
    :class:`~alarmsync.exceptions.AlarmTransportError` when the message could
    not be handed to the channel. Reconnect and backoff of the channel itself
    are the adapter's business.
    """

    async def send(self, category: Category, message: Mapping[str, Any]) -> None: ...


class ConsoleSink(Protocol):
    """Inbound half: what an adapter calls on the console."""

    def deliver(self, message: Any) -> Any: ...

    def deliver_backfill(self, messages: Any) -> Any: ...

    def on_disconnect(self, category: Category) -> None: ...

    def on_reconnect(self, category: Category) -> None: ...


class FallbackSender(Protocol):
    """Direct request path used for actions while the channel is down.

    Raises :class:`~alarmsync.exceptions.AlarmFallbackError` on failure.
    """

    async def send_update(self, category: Category, message: AlarmUpdateMessage) -> None: ...
