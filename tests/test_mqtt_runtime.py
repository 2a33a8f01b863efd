from __future__ import annotations

import json
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

import paho.mqtt.client as mqtt
import pytest

from alarmsync._mqtt import AlarmMqttRuntime, MqttSettings
from alarmsync.config import AlarmSyncConfig
from alarmsync.exceptions import AlarmSyncConfigError, AlarmTransportError
from alarmsync.models.alarm import Category


class _InlineLoop:
    """Stands in for the asyncio loop; runs thread-safe callbacks immediately."""

    def call_soon_threadsafe(self, callback: Callable[..., Any], *args: Any) -> None:
        callback(*args)


class _Sink:
    def __init__(self) -> None:
        self.live: list[bytes] = []
        self.backfill: list[bytes] = []
        self.reconnected: list[Category] = []
        self.disconnected: list[Category] = []

    def deliver(self, message: Any) -> None:
        self.live.append(message)

    def deliver_backfill(self, messages: Any) -> None:
        self.backfill.append(messages)

    def on_disconnect(self, category: Category) -> None:
        self.disconnected.append(category)

    def on_reconnect(self, category: Category) -> None:
        self.reconnected.append(category)


class _FakeClient:
    def __init__(self, rc: int = mqtt.MQTT_ERR_SUCCESS) -> None:
        self.rc = rc
        self.subscribed: list[tuple[str, int]] = []
        self.published: list[tuple[str, str, int]] = []

    def subscribe(self, topic: str, qos: int = 0) -> None:
        self.subscribed.append((topic, qos))

    def publish(self, topic: str, payload: str, qos: int = 0) -> SimpleNamespace:
        self.published.append((topic, payload, qos))
        return SimpleNamespace(rc=self.rc, mid=len(self.published))


def _settings() -> MqttSettings:
    return MqttSettings(host="broker.local", port=8883, agent_id="agent-a", topic_prefix="alarms")


def _runtime(client: _FakeClient | None = None) -> tuple[AlarmMqttRuntime, _Sink]:
    sink = _Sink()
    runtime = AlarmMqttRuntime(loop=_InlineLoop(), sink=sink, settings=_settings())  # type: ignore[arg-type]
    if client is not None:
        runtime._client = client  # type: ignore[assignment]  # noqa: SLF001
        runtime._running = True  # noqa: SLF001
    return runtime, sink


def test_settings_from_config() -> None:
    config = AlarmSyncConfig(agent_id="agent-a", mqtt_host="broker.local", mqtt_tls=False)
    settings = MqttSettings.from_config(config, username="u", password="p")

    assert settings.host == "broker.local"
    assert settings.tls is False
    assert settings.client_id == "alarmsync_agent-a"

    with pytest.raises(AlarmSyncConfigError):
        MqttSettings.from_config(AlarmSyncConfig(agent_id="agent-a"))


def test_connect_subscribes_and_reports_reconnect() -> None:
    runtime, sink = _runtime()
    client = _FakeClient()

    runtime._on_connect(client, None, None, SimpleNamespace(value=0), None)  # type: ignore[arg-type]  # noqa: SLF001

    topics = [topic for topic, _ in client.subscribed]
    assert "alarms/emergency/broadcast" in topics
    assert "alarms/history/responses/agent-a" in topics
    assert len(topics) == 6
    assert sink.reconnected == list(Category)


def test_failed_connect_does_not_report_reconnect() -> None:
    runtime, sink = _runtime()
    client = _FakeClient()

    runtime._on_connect(client, None, None, SimpleNamespace(value=135), None)  # type: ignore[arg-type]  # noqa: SLF001

    assert client.subscribed == []
    assert sink.reconnected == []


def test_messages_routed_by_channel() -> None:
    runtime, sink = _runtime()

    for topic in (
        "alarms/emergency/broadcast",
        "alarms/emergency/responses/agent-a",
        "alarms/emergency/updates",
        "other/emergency/broadcast",
    ):
        msg = SimpleNamespace(topic=topic, payload=b"{}")
        runtime._on_message(None, None, msg)  # type: ignore[arg-type]  # noqa: SLF001

    assert sink.live == [b"{}"]
    assert sink.backfill == [b"{}"]


def test_disconnect_reported_while_running() -> None:
    runtime, sink = _runtime(_FakeClient())

    runtime._on_disconnect(None, None, None, SimpleNamespace(value=7), None)  # type: ignore[arg-type]  # noqa: SLF001

    assert sink.disconnected == list(Category)


@pytest.mark.asyncio
async def test_send_routes_requests_and_updates() -> None:
    client = _FakeClient()
    runtime, _ = _runtime(client)

    await runtime.send(Category.EMERGENCY, {"type": "request_alarms", "seq_numbers": [5, 6]})
    await runtime.send(Category.NON_EMERGENCY, {"type": "updated", "alarm": {"id": "A1"}})

    (req_topic, req_payload, qos), (upd_topic, _, _) = client.published
    assert req_topic == "alarms/emergency/requests/agent-a"
    assert json.loads(req_payload) == {"type": "request_alarms", "seq_numbers": [5, 6]}
    assert qos == 1
    assert upd_topic == "alarms/non_emergency/updates"


@pytest.mark.asyncio
async def test_send_failures_raise_transport_error() -> None:
    runtime, _ = _runtime()
    with pytest.raises(AlarmTransportError):
        await runtime.send(Category.EMERGENCY, {"type": "updated"})

    runtime, _ = _runtime(_FakeClient(rc=mqtt.MQTT_ERR_NO_CONN))
    with pytest.raises(AlarmTransportError) as excinfo:
        await runtime.send(Category.HISTORY, {"type": "closed"})
    assert excinfo.value.category == "history"
