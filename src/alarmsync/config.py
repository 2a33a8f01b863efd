"""Client configuration for alarmsync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from alarmsync._constants import (
    BACKFILL_BATCH_SIZE,
    BACKFILL_INITIAL_DELAY_S,
    BACKFILL_MAX_ATTEMPTS,
    BACKFILL_MAX_DELAY_S,
    BACKFILL_MAX_GAP,
    BACKFILL_MULTIPLIER,
    DEFAULT_MQTT_PORT,
    DEFAULT_TOPIC_PREFIX,
)
from alarmsync.exceptions import AlarmSyncConfigError
from alarmsync.sync.retry import BackfillRetryPolicy


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class AlarmSyncConfig:
    """Console configuration.

    Parameters
    ----------
    agent_id : str
        Identifier of the local agent. Used as the assignee of optimistic
        claims and to address the private backfill channel.
    backfill_initial_delay : float
        Seconds before the first backfill retry.
    backfill_multiplier : float
        Factor applied to the delay after every retry.
    backfill_max_delay : float
        Ceiling for the retry delay in seconds.
    backfill_max_attempts : int
        Retries allowed before a category is marked degraded.
    backfill_batch_size : int
        Maximum sequence numbers listed in one backfill request.
    backfill_max_gap : int
        Largest sequence jump tracked as missing numbers. Numbers older than
        this in a bigger jump are not requested.
    mqtt_host : str or None
        Broker host for the bundled MQTT adapter.
    mqtt_port : int
        Broker port.
    mqtt_topic_prefix : str
        Root of the topic tree (``<prefix>/<category>/...``).
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    mqtt_tls : bool
        Connect with TLS.
    fallback_base_url : str or None
        Base URL of the HTTP fallback endpoint used while disconnected.
    fallback_timeout : float
        Total timeout in seconds for one fallback request.
    """

    agent_id: str
    backfill_initial_delay: float = BACKFILL_INITIAL_DELAY_S
    backfill_multiplier: float = BACKFILL_MULTIPLIER
    backfill_max_delay: float = BACKFILL_MAX_DELAY_S
    backfill_max_attempts: int = BACKFILL_MAX_ATTEMPTS
    backfill_batch_size: int = BACKFILL_BATCH_SIZE
    backfill_max_gap: int = BACKFILL_MAX_GAP
    mqtt_host: str | None = None
    mqtt_port: int = DEFAULT_MQTT_PORT
    mqtt_topic_prefix: str = DEFAULT_TOPIC_PREFIX
    mqtt_keepalive: int = 60
    mqtt_tls: bool = True
    fallback_base_url: str | None = None
    fallback_timeout: float = 10.0

    def __post_init__(self) -> None:
        if not self.agent_id or not self.agent_id.strip():
            raise AlarmSyncConfigError("agent_id must be non-empty")
        if self.backfill_initial_delay <= 0:
            raise AlarmSyncConfigError("backfill_initial_delay must be positive")
        if self.backfill_multiplier < 1.0:
            raise AlarmSyncConfigError("backfill_multiplier must be >= 1.0")
        if self.backfill_max_delay < self.backfill_initial_delay:
            raise AlarmSyncConfigError("backfill_max_delay must be >= backfill_initial_delay")
        if self.backfill_max_attempts < 0:
            raise AlarmSyncConfigError("backfill_max_attempts must be >= 0")
        if self.backfill_batch_size < 1:
            raise AlarmSyncConfigError("backfill_batch_size must be >= 1")
        if self.backfill_max_gap < 1:
            raise AlarmSyncConfigError("backfill_max_gap must be >= 1")
        if "/" in self.agent_id or "/" in self.mqtt_topic_prefix.strip("/"):
            # Both end up as single topic levels.
            raise AlarmSyncConfigError("agent_id and mqtt_topic_prefix must not contain '/'")

    def retry_policy(self) -> BackfillRetryPolicy:
        """Backfill retry policy derived from this configuration."""
        return BackfillRetryPolicy(
            initial_delay=self.backfill_initial_delay,
            multiplier=self.backfill_multiplier,
            max_delay=self.backfill_max_delay,
            max_attempts=self.backfill_max_attempts,
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> AlarmSyncConfig:
        """Create configuration from environment variables.

        Reads ``ALARMSYNC_AGENT_ID`` and the optional ``ALARMSYNC_*``
        variables listed below. Explicit keyword arguments override
        environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        AlarmSyncConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "ALARMSYNC_AGENT_ID": "agent_id",
            "ALARMSYNC_MQTT_HOST": "mqtt_host",
            "ALARMSYNC_MQTT_TOPIC_PREFIX": "mqtt_topic_prefix",
            "ALARMSYNC_FALLBACK_BASE_URL": "fallback_base_url",
        }
        _ENV_FLOAT_MAP = {
            "ALARMSYNC_BACKFILL_INITIAL_DELAY": "backfill_initial_delay",
            "ALARMSYNC_BACKFILL_MULTIPLIER": "backfill_multiplier",
            "ALARMSYNC_BACKFILL_MAX_DELAY": "backfill_max_delay",
            "ALARMSYNC_FALLBACK_TIMEOUT": "fallback_timeout",
        }
        _ENV_INT_MAP = {
            "ALARMSYNC_BACKFILL_MAX_ATTEMPTS": "backfill_max_attempts",
            "ALARMSYNC_BACKFILL_BATCH_SIZE": "backfill_batch_size",
            "ALARMSYNC_BACKFILL_MAX_GAP": "backfill_max_gap",
            "ALARMSYNC_MQTT_PORT": "mqtt_port",
            "ALARMSYNC_MQTT_KEEPALIVE": "mqtt_keepalive",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = val

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = float(val)
            except ValueError as exc:
                raise AlarmSyncConfigError(f"{env_key} must be a number, got {val!r}") from exc

        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = int(val)
            except ValueError as exc:
                raise AlarmSyncConfigError(f"{env_key} must be an integer, got {val!r}") from exc

        if "mqtt_tls" not in overrides:
            config_kwargs["mqtt_tls"] = _env_bool(env.get("ALARMSYNC_MQTT_TLS"), True)

        config_kwargs.update(overrides)

        if "agent_id" not in config_kwargs:
            raise AlarmSyncConfigError("ALARMSYNC_AGENT_ID is not set and no agent_id override given")

        return cls(**config_kwargs)
