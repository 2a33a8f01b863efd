"""HTTP fallback for alarm actions issued while the channel is down."""

from __future__ import annotations

import json
import logging

import aiohttp

from alarmsync._constants import USER_AGENT
from alarmsync._redact import redact_for_log
from alarmsync.config import AlarmSyncConfig
from alarmsync.exceptions import AlarmFallbackError, AlarmSyncConfigError
from alarmsync.models.alarm import Category
from alarmsync.models.envelope import AlarmUpdateMessage

_logger = logging.getLogger(__name__)


class HttpFallbackClient:
    """Posts public alarm updates directly to the alarm service.

    ``POST <base_url>/alarms/<id>/actions`` with the wire message plus its
    category. Any 2xx response counts as accepted; the resulting state still
    arrives through the broadcast channel.
    """

    def __init__(
        self,
        base_url: str,
        http_session: aiohttp.ClientSession,
        *,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @classmethod
    def from_config(cls, config: AlarmSyncConfig, http_session: aiohttp.ClientSession) -> HttpFallbackClient:
        if not config.fallback_base_url:
            raise AlarmSyncConfigError("fallback_base_url is not configured")
        return cls(config.fallback_base_url, http_session, timeout=config.fallback_timeout)

    async def send_update(self, category: Category, message: AlarmUpdateMessage) -> None:
        endpoint = f"/alarms/{message.alarm.id}/actions"
        url = f"{self._base_url}{endpoint}"
        payload = {"category": category.value, **message.to_wire()}
        headers = {
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }

        _logger.debug("POST %s body=%s", url, redact_for_log(payload))

        try:
            async with self._http.post(
                url,
                data=json.dumps(payload, separators=(",", ":")),
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                if not 200 <= resp.status < 300:
                    text = await resp.text()
                    raise AlarmFallbackError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except AlarmFallbackError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise AlarmFallbackError(
                f"Request to {endpoint} failed: {exc}",
                endpoint=endpoint,
            ) from exc
