"""Internal constants shared across the library."""

DEFAULT_TOPIC_PREFIX = "alarms"
DEFAULT_MQTT_PORT = 8883
USER_AGENT = "alarmsync/1"

# ------------------------------------------------------------------
# Backfill retry defaults
# ------------------------------------------------------------------

BACKFILL_INITIAL_DELAY_S = 0.5
BACKFILL_MULTIPLIER = 2.0
BACKFILL_MAX_DELAY_S = 30.0
BACKFILL_MAX_ATTEMPTS = 6
BACKFILL_BATCH_SIZE = 500
# Largest sequence jump tracked as a gap; older numbers in a bigger jump are given up.
BACKFILL_MAX_GAP = 10_000

# ------------------------------------------------------------------
# MQTT topic layout  (<prefix>/<category>/<channel>[/<agent_id>])
# ------------------------------------------------------------------

CHANNEL_BROADCAST = "broadcast"
CHANNEL_UPDATES = "updates"
CHANNEL_REQUESTS = "requests"
CHANNEL_RESPONSES = "responses"


def broadcast_topic(prefix: str, category: str) -> str:
    """Topic carrying live envelopes for *category*."""
    return f"{prefix}/{category}/{CHANNEL_BROADCAST}"


def updates_topic(prefix: str, category: str) -> str:
    """Topic where public alarm updates for *category* are published."""
    return f"{prefix}/{category}/{CHANNEL_UPDATES}"


def requests_topic(prefix: str, category: str, agent_id: str) -> str:
    """Private topic for backfill requests issued by *agent_id*."""
    return f"{prefix}/{category}/{CHANNEL_REQUESTS}/{agent_id}"


def responses_topic(prefix: str, category: str, agent_id: str) -> str:
    """Private topic where backfill responses for *agent_id* arrive."""
    return f"{prefix}/{category}/{CHANNEL_RESPONSES}/{agent_id}"


def parse_topic(prefix: str, topic: str) -> tuple[str, str] | None:
    """Split *topic* into ``(category, channel)``.

    Returns ``None`` when the topic does not belong to *prefix*.
    """
    head = f"{prefix}/"
    if not topic.startswith(head):
        return None
    parts = topic[len(head) :].split("/")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    return parts[0], parts[1]
