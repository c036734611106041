"""Real-time channel publisher over Redis pub/sub"""

import json
import logging
from typing import Protocol
import redis
from auction_gateway.domain.events import RealtimeEvent
from auction_gateway.infrastructure.observability.metrics import notification_failure_counter

logger = logging.getLogger(__name__)


def auction_channel(auction_id: str) -> str:
    return f"auction:{auction_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class EventPublisher(Protocol):
    def publish(self, channel: str, event: RealtimeEvent) -> bool: ...


class RedisEventPublisher:
    """
    Best-effort publisher: the socket layer subscribes to these channels and
    forwards events to connected clients. Failures are logged and counted,
    never raised, so a committed bid or settlement is never reported as failed.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    def publish(self, channel: str, event: RealtimeEvent) -> bool:
        try:
            self.client.publish(channel, json.dumps(event.to_payload()))
            return True
        except redis.RedisError as e:
            notification_failure_counter.labels(kind=event.kind).inc()
            logger.warning(
                f"Failed to publish {event.kind} event: {e}",
                extra={"channel": channel, "kind": event.kind},
            )
            return False
