from __future__ import annotations

import pytest
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from creatorcrm.core.db import models
from creatorcrm.core.domain import Channel, ExternalKeyType, LeadSource, LeadStatus
from creatorcrm.core.errors import IdentityResolutionError
from creatorcrm.identity import ExternalIdentityResolver

pytestmark = pytest.mark.unit


def _lead_count(session: Session, tenant_id: str = "t1") -> int:
    return session.exec(
        select(func.count()).select_from(models.Lead).where(models.Lead.tenant_id == tenant_id)
    ).one()


def test_resolve_twice_returns_same_lead(session, owner, resolver) -> None:
    first = resolver.resolve_detailed("t1", Channel.CHAT, "u123", "alice")
    second = resolver.resolve_detailed("t1", Channel.CHAT, "u123", "alice")

    assert first.created is True
    assert second.created is False
    assert first.lead.id == second.lead.id
    assert _lead_count(session) == 1

    lead = first.lead
    assert lead.chat_user_id == "u123"
    assert lead.owner_id == owner.id
    assert lead.status == LeadStatus.NEW
    assert lead.source == LeadSource.CHAT


def test_resolve_only_fills_missing_name(session, owner, resolver) -> None:
    lead = resolver.resolve("t1", Channel.CHAT, "u1")
    assert lead.name is None

    resolver.resolve("t1", Channel.CHAT, "u1", "first-name")
    resolver.resolve("t1", Channel.CHAT, "u1", "second-name")

    assert session.get(models.Lead, lead.id).name == "first-name"


@pytest.mark.parametrize("key", [None, "", "   "])
def test_resolve_without_key_is_rejected(session, owner, resolver, key) -> None:
    with pytest.raises(IdentityResolutionError):
        resolver.resolve("t1", Channel.CHAT, key, "ghost")

    assert _lead_count(session) == 0


def test_resolve_unknown_tenant_is_rejected(session, resolver) -> None:
    with pytest.raises(IdentityResolutionError) as exc_info:
        resolver.resolve("missing", Channel.CHAT, "u1")

    assert exc_info.value.status_code == 202
    assert exc_info.value.code == "identity_unresolved"


def test_tenant_without_users_has_no_owner(session, resolver) -> None:
    session.add(models.Tenant(id="empty"))
    session.commit()

    with pytest.raises(IdentityResolutionError):
        resolver.resolve_tenant_owner("empty")


def test_owner_falls_back_to_earliest_user(session, factories, resolver) -> None:
    owner = factories.seed_tenant(session, "t1")
    tenant = session.get(models.Tenant, "t1")
    tenant.owner_user_id = None
    session.add(tenant)
    session.add(models.AppUser(tenant_id="t1", external_user_id="late-joiner"))
    session.commit()

    assert resolver.resolve_tenant_owner("t1").id == owner.id


def test_designated_owner_in_other_tenant_is_ignored(session, factories, resolver) -> None:
    owner = factories.seed_tenant(session, "t1")
    other = factories.seed_tenant(session, "t2")
    tenant = session.get(models.Tenant, "t1")
    tenant.owner_user_id = other.id
    session.add(tenant)
    session.commit()

    assert resolver.resolve_tenant_owner("t1").id == owner.id


def test_same_key_in_two_tenants_yields_two_leads(session, factories, resolver) -> None:
    factories.seed_tenant(session, "t1")
    factories.seed_tenant(session, "t2")

    first = resolver.resolve("t1", Channel.CHAT, "u1")
    second = resolver.resolve("t2", Channel.CHAT, "u1")

    assert first.id != second.id
    assert first.tenant_id == "t1"
    assert second.tenant_id == "t2"


def test_manual_leads_are_unconstrained(session, owner, resolver) -> None:
    for index in range(5):
        resolver.create_manual_lead("t1", f"Walk-in {index}")
    session.commit()

    leads = session.exec(select(models.Lead).where(models.Lead.tenant_id == "t1")).all()
    assert len(leads) == 5
    assert all(lead.chat_user_id is None for lead in leads)
    assert all(lead.source == LeadSource.MANUAL for lead in leads)


def test_database_rejects_duplicate_chat_key(session, owner) -> None:
    session.add(models.Lead(tenant_id="t1", owner_id=owner.id, chat_user_id="dup"))
    session.commit()
    session.add(models.Lead(tenant_id="t1", owner_id=owner.id, chat_user_id="dup"))

    with pytest.raises(IntegrityError):
        session.commit()
    session.rollback()


def test_commerce_alias_is_backfilled_and_matched(session, owner, resolver) -> None:
    lead = resolver.resolve(
        "t1",
        Channel.COMMERCE,
        "mem_1",
        "Buyer",
        key_type=ExternalKeyType.COMMERCE_MEMBERSHIP,
        aliases={ExternalKeyType.COMMERCE_CUSTOMER: "cust_1"},
    )

    assert lead.commerce_membership_id == "mem_1"
    assert lead.commerce_customer_id == "cust_1"

    by_customer = resolver.resolve("t1", Channel.COMMERCE, "cust_1")
    assert by_customer.id == lead.id
    assert _lead_count(session) == 1


def test_existing_lead_gains_missing_alias(session, owner, resolver) -> None:
    lead = resolver.resolve("t1", Channel.COMMERCE, "cust_9")
    assert lead.commerce_membership_id is None

    again = resolver.resolve(
        "t1",
        Channel.COMMERCE,
        "mem_9",
        key_type=ExternalKeyType.COMMERCE_MEMBERSHIP,
        aliases={ExternalKeyType.COMMERCE_CUSTOMER: "cust_9"},
    )

    assert again.id == lead.id
    assert again.commerce_membership_id == "mem_9"


def test_cross_channel_alias_is_refused(session, owner, resolver) -> None:
    with pytest.raises(ValueError):
        resolver.resolve(
            "t1",
            Channel.CHAT,
            "u1",
            aliases={ExternalKeyType.COMMERCE_CUSTOMER: "cust_1"},
        )

    with pytest.raises(ValueError):
        resolver.resolve("t1", Channel.CHAT, "u1", key_type=ExternalKeyType.COMMERCE_CUSTOMER)


def test_concurrent_create_returns_existing_lead(session, owner, monkeypatch) -> None:
    winner = models.Lead(tenant_id="t1", owner_id=owner.id, chat_user_id="racer")
    session.add(winner)
    session.commit()
    winner_id = winner.id

    resolver = ExternalIdentityResolver(session)
    original_lookup = resolver._lookup
    calls = []

    def stale_then_fresh(tenant_id, keys):
        calls.append(tenant_id)
        if len(calls) == 1:
            return None
        return original_lookup(tenant_id, keys)

    monkeypatch.setattr(resolver, "_lookup", stale_then_fresh)

    resolution = resolver.resolve_detailed("t1", Channel.CHAT, "racer", "late")

    assert resolution.created is False
    assert resolution.lead.id == winner_id
    assert len(calls) == 2
    assert _lead_count(session) == 1


def test_is_app_user_checks_users_and_bindings(session, factories, resolver) -> None:
    owner = factories.seed_tenant(session, "t1", owner_chat_user_id="creator-chat")
    session.add(
        models.ChannelBinding(
            owner_id=owner.id, tenant_id="t1", guild_id="g1", chat_user_id="bound-chat"
        )
    )
    session.commit()

    assert resolver.is_app_user("t1", "creator-chat")
    assert resolver.is_app_user("t1", "bound-chat")
    assert not resolver.is_app_user("t1", "fan")
    assert not resolver.is_app_user("t1", None)


def test_tenant_for_guild_uses_active_binding(session, factories, resolver) -> None:
    owner = factories.seed_tenant(session, "t1")
    other = factories.seed_tenant(session, "t2")
    session.add(models.ChannelBinding(owner_id=owner.id, tenant_id="t1", guild_id="g1"))
    session.add(
        models.ChannelBinding(owner_id=other.id, tenant_id="t2", guild_id="g2", is_active=False)
    )
    session.commit()

    assert resolver.tenant_for_guild("g1") == "t1"
    assert resolver.tenant_for_guild("g2") is None
    assert resolver.tenant_for_guild(None) is None
