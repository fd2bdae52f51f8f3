"""Fan-out of persisted messages to realtime subscriber rooms."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from redis.asyncio import Redis

from creatorcrm.core.config import RealtimeSettings
from creatorcrm.core.db import models

logger = logging.getLogger(__name__)


class RealtimeTransport(Protocol):
    """Delivers one event to one room."""

    async def emit(self, room: str, event: str, payload: Mapping[str, Any]) -> None:
        ...


def message_payload(message: models.Message) -> dict[str, Any]:
    """JSON-compatible view of a message for subscribers."""

    return {
        "id": str(message.id),
        "tenant_id": message.tenant_id,
        "lead_id": str(message.lead_id) if message.lead_id else None,
        "owner_id": str(message.owner_id),
        "channel": str(getattr(message.channel, "value", message.channel)),
        "direction": str(getattr(message.direction, "value", message.direction)),
        "delivery_status": str(getattr(message.delivery_status, "value", message.delivery_status)),
        "content": message.content,
        "external_message_id": message.external_message_id,
        "author_username": message.author_username,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


class RealtimeRelay:
    """Emit message events to the lead, owner and tenant rooms, in that order."""

    def __init__(
        self,
        transport: RealtimeTransport,
        *,
        settings: RealtimeSettings | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings or RealtimeSettings()

    @property
    def message_event(self) -> str:
        return self._settings.message_event

    @property
    def update_event(self) -> str:
        return self._settings.update_event

    @staticmethod
    def rooms_for(message: models.Message) -> list[str]:
        rooms = []
        if message.lead_id is not None:
            rooms.append(f"lead:{message.lead_id}")
        rooms.append(f"user:{message.owner_id}")
        rooms.append(f"tenant:{message.tenant_id}")
        return rooms

    async def relay(self, message: models.Message, *, event: str | None = None) -> list[str]:
        """Emit ``message`` to each of its rooms and return the rooms reached."""

        event = event or self.message_event
        payload = message_payload(message)
        rooms = self.rooms_for(message)
        for room in rooms:
            await self._transport.emit(room, event, payload)
        logger.debug(
            "message relayed",
            extra={"message_id": payload["id"], "event": event, "rooms": rooms},
        )
        return rooms


class RedisRealtimeTransport:
    """Publish room events as JSON on ``<prefix>:<room>`` pub/sub channels."""

    def __init__(self, redis: Redis, *, channel_prefix: str = "realtime") -> None:
        self._redis = redis
        self._prefix = channel_prefix

    @classmethod
    def from_url(cls, url: str, *, channel_prefix: str = "realtime") -> RedisRealtimeTransport:
        return cls(Redis.from_url(url), channel_prefix=channel_prefix)

    async def emit(self, room: str, event: str, payload: Mapping[str, Any]) -> None:
        body = json.dumps({"event": event, "room": room, "payload": dict(payload)})
        await self._redis.publish(f"{self._prefix}:{room}", body)

    async def close(self) -> None:
        await self._redis.aclose()
