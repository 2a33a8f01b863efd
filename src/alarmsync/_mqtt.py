"""Reference MQTT connection adapter.

Topic layout (see :mod:`alarmsync._constants`)::

    <prefix>/<category>/broadcast              live envelopes (subscribe)
    <prefix>/<category>/responses/<agent_id>   backfill responses (subscribe)
    <prefix>/<category>/updates                public alarm updates (publish)
    <prefix>/<category>/requests/<agent_id>    backfill requests (publish)

paho-mqtt runs its network loop on its own thread; every callback into the
console is handed to the asyncio loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from alarmsync._constants import (
    CHANNEL_BROADCAST,
    CHANNEL_RESPONSES,
    broadcast_topic,
    parse_topic,
    requests_topic,
    responses_topic,
    updates_topic,
)
from alarmsync.config import AlarmSyncConfig
from alarmsync.exceptions import AlarmSyncConfigError, AlarmTransportError
from alarmsync.models.alarm import Category
from alarmsync.transport import ConsoleSink


@dataclass(frozen=True)
class MqttSettings:
    """Broker details for :class:`AlarmMqttRuntime`."""

    host: str
    port: int
    agent_id: str
    topic_prefix: str
    keepalive: int = 60
    tls: bool = True
    username: str | None = None
    password: str | None = None

    @property
    def client_id(self) -> str:
        return f"alarmsync_{self.agent_id}"

    @classmethod
    def from_config(
        cls,
        config: AlarmSyncConfig,
        *,
        username: str | None = None,
        password: str | None = None,
    ) -> MqttSettings:
        if not config.mqtt_host:
            raise AlarmSyncConfigError("mqtt_host is not configured")
        return cls(
            host=config.mqtt_host,
            port=config.mqtt_port,
            agent_id=config.agent_id,
            topic_prefix=config.mqtt_topic_prefix.strip("/"),
            keepalive=config.mqtt_keepalive,
            tls=config.mqtt_tls,
            username=username,
            password=password,
        )


class AlarmMqttRuntime:
    """Threaded paho-mqtt runtime feeding an :class:`~alarmsync.console.AlarmConsole`."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        sink: ConsoleSink,
        settings: MqttSettings,
        categories: Iterable[Category] = tuple(Category),
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._sink = sink
        self._settings = settings
        self._categories = tuple(categories)
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def subscriptions(self) -> list[str]:
        """Topics subscribed on every (re)connect."""
        prefix = self._settings.topic_prefix
        topics: list[str] = []
        for category in self._categories:
            topics.append(broadcast_topic(prefix, category.value))
            topics.append(responses_topic(prefix, category.value, self._settings.agent_id))
        return topics

    def start(self) -> None:
        """Connect and start the network loop."""
        self.stop()
        settings = self._settings
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s prefix=%s client_id=%s",
            settings.host,
            settings.port,
            settings.topic_prefix,
            settings.client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=settings.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if settings.username is not None:
            client.username_pw_set(settings.username, settings.password)
        if settings.tls:
            client.tls_set()

        client.on_connect = self._on_connect
        client.on_message = self._on_message
        client.on_disconnect = self._on_disconnect

        # connect_async lets paho retry the initial connection from its loop.
        client.connect_async(settings.host, settings.port, keepalive=settings.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
        for category in self._categories:
            self._loop.call_soon_threadsafe(self._sink.on_disconnect, category)

    async def send(self, category: Category, message: Mapping[str, Any]) -> None:
        """Publish *message*; backfill requests go to the private topic."""
        client = self._client
        if client is None or not self._running:
            raise AlarmTransportError("MQTT runtime is not running", category=category.value)

        prefix = self._settings.topic_prefix
        if message.get("type") == "request_alarms":
            topic = requests_topic(prefix, category.value, self._settings.agent_id)
        else:
            topic = updates_topic(prefix, category.value)

        payload = json.dumps(dict(message), separators=(",", ":"))
        info = client.publish(topic, payload, qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise AlarmTransportError(
                f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}",
                category=category.value,
            )
        self._logger.debug("MQTT published topic=%s mid=%s", topic, info.mid)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if reason_code.value != 0:
            self._logger.warning("MQTT connect failed: %s", reason_code)
            return
        self._logger.debug("MQTT connected successfully reason=%s", reason_code)
        for topic in self.subscriptions():
            self._logger.debug("MQTT subscribing topic=%s", topic)
            client.subscribe(topic, qos=1)
        for category in self._categories:
            self._loop.call_soon_threadsafe(self._sink.on_reconnect, category)

    def _on_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        parsed = parse_topic(self._settings.topic_prefix, msg.topic)
        if parsed is None:
            self._logger.debug("MQTT message on unexpected topic=%s", msg.topic)
            return
        _category, channel = parsed
        self._logger.debug("Received PUBLISH topic=%s bytes=%d", msg.topic, len(msg.payload))
        payload = bytes(msg.payload)
        if channel == CHANNEL_BROADCAST:
            self._loop.call_soon_threadsafe(self._sink.deliver, payload)
        elif channel == CHANNEL_RESPONSES:
            self._loop.call_soon_threadsafe(self._sink.deliver_backfill, payload)
        else:
            self._logger.debug("MQTT message on unhandled channel=%s", channel)

    def _on_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if not self._running:
            return
        self._logger.debug("MQTT disconnected: %s", reason_code)
        for category in self._categories:
            self._loop.call_soon_threadsafe(self._sink.on_disconnect, category)
