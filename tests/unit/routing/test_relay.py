from __future__ import annotations

import json
from uuid import uuid4

import pytest

from creatorcrm.core.config import RealtimeSettings
from creatorcrm.core.db import models
from creatorcrm.routing import RealtimeRelay, RedisRealtimeTransport

pytestmark = pytest.mark.unit


class FakeRedis:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, body: str) -> int:
        self.published.append((channel, body))
        return 1


def _message(lead_id=None) -> models.Message:
    return models.Message(
        tenant_id="t1",
        lead_id=lead_id,
        owner_id=uuid4(),
        channel="chat",
        direction="inbound",
        content="hello",
    )


def test_rooms_are_ordered_lead_user_tenant() -> None:
    lead_id = uuid4()
    message = _message(lead_id)

    assert RealtimeRelay.rooms_for(message) == [
        f"lead:{lead_id}",
        f"user:{message.owner_id}",
        "tenant:t1",
    ]


def test_message_without_lead_skips_lead_room() -> None:
    message = _message()

    assert RealtimeRelay.rooms_for(message) == [f"user:{message.owner_id}", "tenant:t1"]


@pytest.mark.asyncio
async def test_redis_transport_publishes_json_per_room() -> None:
    redis = FakeRedis()
    relay = RealtimeRelay(
        RedisRealtimeTransport(redis, channel_prefix="rt"),
        settings=RealtimeSettings(message_event="crm:new"),
    )
    message = _message(uuid4())

    rooms = await relay.relay(message)

    assert [channel for channel, _ in redis.published] == [f"rt:{room}" for room in rooms]
    body = json.loads(redis.published[0][1])
    assert body["event"] == "crm:new"
    assert body["room"] == rooms[0]
    assert body["payload"]["content"] == "hello"
    assert body["payload"]["lead_id"] == str(message.lead_id)
