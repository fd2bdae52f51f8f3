from __future__ import annotations

from datetime import timedelta

import pytest
from sqlmodel import select

from creatorcrm.core.db import models
from creatorcrm.core.domain import Channel, CommerceMessage, InboundEvent
from creatorcrm.routing import CommerceMessagePoller, MessageRouter

pytestmark = pytest.mark.unit


@pytest.fixture
def router(session, resolver, relay, commerce) -> MessageRouter:
    return MessageRouter(session, resolver, relay, commerce=commerce)


def _poller(session, router, commerce, **options) -> CommerceMessagePoller:
    return CommerceMessagePoller(session, router, commerce, **options)


def _lead_room_contents(transport) -> list[str]:
    return [payload["content"] for room, _, payload in transport.events if room.startswith("lead:")]


@pytest.mark.asyncio
async def test_poll_routes_customer_messages_oldest_first(
    session, owner, factories, router, commerce, transport
) -> None:
    lead = factories.add_lead(session, owner, commerce_customer_id="cust_1", name="Buyer")
    lead_id = lead.id
    factories.add_lead(session, owner, chat_user_id="chat-only")
    t0 = factories.T0
    commerce.conversations["cust_1"] = [
        CommerceMessage("msg_2", "cust_1", "second", created_at=t0 + timedelta(minutes=2)),
        CommerceMessage("msg_1", "cust_1", "first", created_at=t0 + timedelta(minutes=1)),
        CommerceMessage("msg_3", "staff_1", "our reply", created_at=t0 + timedelta(minutes=3)),
    ]

    result = await _poller(session, router, commerce).poll_messages("t1")

    assert result.as_dict() == {
        "leads_polled": 1,
        "fetched": 3,
        "routed": 2,
        "skipped": 1,
        "errors": [],
    }
    assert commerce.history_calls == [("cust_1", 10)]
    assert _lead_room_contents(transport) == ["first", "second"]
    stored = session.exec(select(models.Message).where(models.Message.lead_id == lead_id)).all()
    assert sorted(message.external_message_id for message in stored) == ["msg_1", "msg_2"]
    assert session.get(models.Lead, lead_id).last_contact_at is not None


@pytest.mark.asyncio
async def test_second_poll_skips_stored_messages_without_relaying(
    session, owner, factories, router, commerce, transport
) -> None:
    factories.add_lead(session, owner, commerce_customer_id="cust_1")
    commerce.conversations["cust_1"] = [CommerceMessage("msg_1", "cust_1", "hello")]
    poller = _poller(session, router, commerce)

    await poller.poll_messages("t1")
    relayed = len(transport.events)
    again = await poller.poll_messages("t1")

    assert again.routed == 0
    assert again.skipped == 1
    assert len(transport.events) == relayed
    assert len(session.exec(select(models.Message)).all()) == 1


@pytest.mark.asyncio
async def test_webhook_delivery_and_poll_store_one_message(
    session, owner, factories, router, commerce
) -> None:
    factories.add_lead(session, owner, commerce_customer_id="cust_1")
    await router.route(
        InboundEvent(
            channel=Channel.COMMERCE,
            external_user_id="cust_1",
            content="hello",
            external_message_id="msg_1",
            tenant_id="t1",
        )
    )
    commerce.conversations["cust_1"] = [CommerceMessage("msg_1", "cust_1", "hello")]

    result = await _poller(session, router, commerce).poll_messages("t1")

    assert result.routed == 0
    assert len(session.exec(select(models.Message)).all()) == 1


@pytest.mark.asyncio
async def test_failing_lead_does_not_stop_the_batch(
    session, owner, factories, router, commerce
) -> None:
    failing = factories.add_lead(session, owner, commerce_customer_id="cust_1")
    failing_id = failing.id
    factories.add_lead(session, owner, commerce_customer_id="cust_2")
    commerce.fail_history_for = {"cust_1"}
    commerce.conversations["cust_2"] = [CommerceMessage("msg_9", "cust_2", "still there?")]

    result = await _poller(session, router, commerce).poll_messages("t1")

    assert result.leads_polled == 2
    assert result.routed == 1
    assert len(result.errors) == 1
    assert str(failing_id) in result.errors[0]


@pytest.mark.asyncio
async def test_batch_is_bounded_and_prefers_recent_contacts(
    session, owner, factories, router, commerce
) -> None:
    factories.add_lead(session, owner, commerce_customer_id="quiet")
    factories.add_lead(
        session, owner, commerce_customer_id="older", last_contact_at=factories.T0
    )
    factories.add_lead(
        session,
        owner,
        commerce_customer_id="recent",
        last_contact_at=factories.T0 + timedelta(days=1),
    )
    other_owner = factories.seed_tenant(session, "t2")
    factories.add_lead(session, other_owner, commerce_customer_id="elsewhere")

    result = await _poller(session, router, commerce, batch_size=2, history_limit=5).poll_messages(
        "t1"
    )

    assert result.leads_polled == 2
    assert commerce.history_calls == [("recent", 5), ("older", 5)]
