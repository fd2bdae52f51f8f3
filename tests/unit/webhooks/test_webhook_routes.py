from __future__ import annotations

import hashlib
import hmac
import json

import pytest
from httpx import ASGITransport, AsyncClient
from sqlmodel import select

from creatorcrm.core.config import AppSettings, ChatPlatformSettings, CommercePlatformSettings
from creatorcrm.core.db import models
from creatorcrm.core.domain import LeadStatus
from creatorcrm.webhooks import dependencies as deps
from creatorcrm.webhooks.app import create_app

pytestmark = pytest.mark.unit


@pytest.fixture
def webhook_app(session, owner, relay, commerce):
    settings = AppSettings(
        chat=ChatPlatformSettings(webhook_secret=None),
        commerce=CommercePlatformSettings(webhook_secret="shh", default_company_id="t1"),
    )

    def override_session():
        yield session

    app = create_app()
    app.dependency_overrides[deps.get_settings] = lambda: settings
    app.dependency_overrides[deps.get_session] = override_session
    app.dependency_overrides[deps.get_relay] = lambda: relay
    app.dependency_overrides[deps.get_chat_client] = lambda: None
    app.dependency_overrides[deps.get_commerce_client] = lambda: commerce

    yield app, settings

    app.dependency_overrides.clear()


def _signed(body: dict | list, secret: str = "shh") -> tuple[bytes, dict[str, str]]:
    raw = json.dumps(body).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return raw, {"X-Signature": f"sha256={signature}", "Content-Type": "application/json"}


async def _post(app, path: str, content: bytes, headers: dict[str, str]):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.post(path, content=content, headers=headers)


@pytest.mark.asyncio
async def test_commerce_message_is_routed(webhook_app, session, transport) -> None:
    app, _ = webhook_app
    content, headers = _signed(
        [
            {
                "event": "message.created",
                "data": {
                    "user_id": "cust_1",
                    "company_id": "t1",
                    "content": "is the course still open?",
                    "message_id": "wm_1",
                },
            }
        ]
    )

    response = await _post(app, "/webhooks/commerce", content, headers)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "routed"
    assert body["lead_created"] is True
    lead = session.exec(select(models.Lead)).one()
    assert lead.commerce_customer_id == "cust_1"
    assert transport.rooms[0] == f"lead:{lead.id}"


@pytest.mark.asyncio
async def test_commerce_webhook_without_user_is_acknowledged(webhook_app, session) -> None:
    app, _ = webhook_app
    content, headers = _signed({"event": "message.created", "content": "test hook"})

    response = await _post(app, "/webhooks/commerce", content, headers)

    assert response.status_code == 202
    assert response.json() == {"status": "ignored", "reason": "missing user_id"}
    assert session.exec(select(models.Message)).all() == []


@pytest.mark.asyncio
async def test_membership_activation_imports_won_lead(webhook_app, session) -> None:
    app, _ = webhook_app
    content, headers = _signed(
        {
            "id": "hook_1",
            "event": "membership_activated",
            "data": {"id": "mem_1", "user": {"id": "user_1"}},
        }
    )

    response = await _post(app, "/webhooks/commerce", content, headers)

    assert response.status_code == 200
    assert response.json()["status"] == "imported"
    lead = session.exec(select(models.Lead)).one()
    assert lead.tenant_id == "t1"
    assert lead.commerce_membership_id == "mem_1"
    assert lead.status == LeadStatus.WON


@pytest.mark.asyncio
async def test_commerce_signature_is_enforced(webhook_app) -> None:
    app, _ = webhook_app
    content, headers = _signed({"user_id": "cust_1"}, secret="wrong")

    response = await _post(app, "/webhooks/commerce", content, headers)

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unknown_commerce_event_is_ignored(webhook_app) -> None:
    app, _ = webhook_app
    content, headers = _signed({"event": "payment.refunded", "user_id": "cust_1"})

    response = await _post(app, "/webhooks/commerce", content, headers)

    assert response.status_code == 202
    assert response.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_chat_message_routes_and_edit_updates(webhook_app, session, transport) -> None:
    app, _ = webhook_app
    headers = {"Content-Type": "application/json"}
    created = {
        "type": "message_create",
        "id": "cm_1",
        "tenant_id": "t1",
        "channel_id": "dm-1",
        "content": "hello there",
        "author": {"id": "fan-1", "username": "fan"},
    }

    response = await _post(app, "/webhooks/chat", json.dumps(created).encode(), headers)

    assert response.status_code == 200
    assert response.json()["status"] == "routed"
    lead = session.exec(select(models.Lead)).one()
    assert lead.chat_channel_id == "dm-1"

    edited = {"type": "message_update", "id": "cm_1", "content": "hello there!"}
    response = await _post(app, "/webhooks/chat", json.dumps(edited).encode(), headers)

    assert response.status_code == 200
    assert session.exec(select(models.Message)).one().content == "hello there!"
    assert transport.events[-1][1] == "lead:message_updated"


@pytest.mark.asyncio
async def test_chat_bot_message_is_rejected(webhook_app, session) -> None:
    app, _ = webhook_app
    payload = {
        "type": "message_create",
        "id": "cm_2",
        "tenant_id": "t1",
        "content": "beep",
        "author": {"id": "bot-1", "bot": True},
    }

    response = await _post(
        app, "/webhooks/chat", json.dumps(payload).encode(), {"Content-Type": "application/json"}
    )

    assert response.status_code == 202
    assert response.json() == {"status": "rejected", "reason": "bot author"}
    assert session.exec(select(models.Lead)).all() == []


@pytest.mark.asyncio
async def test_member_join_creates_lead_for_bound_guild(webhook_app, session, owner) -> None:
    app, _ = webhook_app
    session.add(models.ChannelBinding(owner_id=owner.id, tenant_id="t1", guild_id="g1"))
    session.commit()
    payload = {"type": "guild_member_add", "guild_id": "g1", "user": {"id": "fan-2", "username": "two"}}

    response = await _post(
        app, "/webhooks/chat", json.dumps(payload).encode(), {"Content-Type": "application/json"}
    )

    assert response.status_code == 200
    assert response.json()["status"] == "lead_created"
    assert session.exec(select(models.Lead)).one().chat_user_id == "fan-2"


@pytest.mark.asyncio
async def test_health_and_metrics(webhook_app) -> None:
    app, _ = webhook_app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        health = await client.get("/health")
        metrics = await client.get("/metrics")

    assert health.json() == {"status": "ok"}
    assert metrics.status_code == 200
    assert "creatorcrm_http_requests_total" in metrics.text


@pytest.mark.asyncio
async def test_raw_chat_message_with_numeric_type_is_routed(webhook_app, session) -> None:
    app, _ = webhook_app
    payload = {"type": 0, "id": "m1", "tenant_id": "t1", "content": "hi", "author": {"id": "fan-1"}}

    response = await _post(
        app, "/webhooks/chat", json.dumps(payload).encode(), {"Content-Type": "application/json"}
    )

    assert response.status_code == 200
    assert response.json()["status"] == "routed"
    lead = session.exec(select(models.Lead)).one()
    assert lead.chat_user_id == "fan-1"
    assert session.exec(select(models.Message)).one().external_message_id == "m1"


@pytest.mark.asyncio
async def test_membership_webhook_without_commerce_client_is_acknowledged(
    webhook_app, session
) -> None:
    app, _ = webhook_app
    app.dependency_overrides[deps.get_commerce_client] = lambda: None
    content, headers = _signed(
        {"event": "membership_activated", "data": {"id": "mem_9", "user": {"id": "user_9"}}}
    )

    response = await _post(app, "/webhooks/commerce", content, headers)

    assert response.status_code == 202
    assert response.json() == {"status": "ignored", "reason": "commerce platform not configured"}
    assert session.exec(select(models.Lead)).all() == []
