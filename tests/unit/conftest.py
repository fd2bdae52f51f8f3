from __future__ import annotations

import asyncio
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from creatorcrm.core.db import init_db, models
from creatorcrm.core.domain import CommerceMessage, CommerceUser, GuildMember, MembershipRecord
from creatorcrm.core.errors import ExternalPlatformError
from creatorcrm.identity import ExternalIdentityResolver
from creatorcrm.routing import RealtimeRelay

LEAD_UNIQUE_INDEXES = ("uq_leads_tenant_chat_user", "uq_leads_tenant_commerce_membership")


class RecordingTransport:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def emit(self, room: str, event: str, payload: Mapping[str, Any]) -> None:
        self.events.append((room, event, dict(payload)))

    @property
    def rooms(self) -> list[str]:
        return [room for room, _, _ in self.events]


class StubChat:
    def __init__(
        self,
        *,
        guilds: set[str] | None = None,
        members: list[GuildMember] | None = None,
    ) -> None:
        self.guilds = guilds or set()
        self.members = members or []
        self.sent: list[tuple[str, str]] = []
        self.member_calls: list[str] = []
        self.fail_send = False
        self.send_delay = 0.0

    async def send_message(self, channel_id: str, content: str) -> str:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_send:
            raise ExternalPlatformError(
                "chat send_message failed with status 500",
                platform="chat",
                operation="send_message",
                upstream_status=500,
            )
        self.sent.append((channel_id, content))
        return f"chat-msg-{len(self.sent)}"

    async def list_accessible_guilds(self) -> set[str]:
        return set(self.guilds)

    async def list_guild_members(self, guild_id: str) -> list[GuildMember]:
        self.member_calls.append(guild_id)
        return list(self.members)


class StubCommerce:
    def __init__(
        self,
        *,
        memberships: list[MembershipRecord] | None = None,
        users: dict[str, CommerceUser] | None = None,
    ) -> None:
        self.memberships = memberships or []
        self.users = users or {}
        self.sent: list[tuple[str, str]] = []
        self.fail_listing = False
        self.conversations: dict[str, list[CommerceMessage]] = {}
        self.history_calls: list[tuple[str, int]] = []
        self.fail_history_for: set[str] = set()

    async def list_memberships(self, tenant_id: str) -> list[MembershipRecord]:
        if self.fail_listing:
            raise ExternalPlatformError(
                "commerce list_memberships timed out",
                platform="commerce",
                operation="list_memberships",
                timed_out=True,
            )
        return list(self.memberships)

    async def get_user(self, user_id: str) -> CommerceUser:
        if user_id not in self.users:
            raise ExternalPlatformError(
                "commerce get_user failed with status 404",
                platform="commerce",
                operation="get_user",
                upstream_status=404,
            )
        return self.users[user_id]

    async def send_message(self, user_id: str, content: str) -> str:
        self.sent.append((user_id, content))
        return f"commerce-msg-{len(self.sent)}"

    async def list_messages(self, user_id: str, *, limit: int = 10) -> list[CommerceMessage]:
        self.history_calls.append((user_id, limit))
        if user_id in self.fail_history_for:
            raise ExternalPlatformError(
                "commerce list_messages failed with status 500",
                platform="commerce",
                operation="list_messages",
                upstream_status=500,
            )
        return list(self.conversations.get(user_id, []))[:limit]


@pytest.fixture
def engine() -> Iterator[Engine]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine: Engine) -> Iterator[Session]:
    with Session(engine) as session:
        yield session


@pytest.fixture
def legacy_session(engine: Engine) -> Iterator[Session]:
    """Session on a database that predates the lead uniqueness indexes."""

    with engine.begin() as connection:
        for name in LEAD_UNIQUE_INDEXES:
            connection.execute(text(f"DROP INDEX {name}"))
    with Session(engine) as session:
        yield session


def seed_tenant(
    session: Session,
    tenant_id: str = "t1",
    *,
    owner_chat_user_id: str | None = None,
) -> models.AppUser:
    tenant = models.Tenant(id=tenant_id, name=f"Company {tenant_id}")
    session.add(tenant)
    session.flush()
    owner = models.AppUser(
        tenant_id=tenant_id,
        external_user_id=f"user-{tenant_id}",
        chat_user_id=owner_chat_user_id,
        name=f"Owner {tenant_id}",
    )
    session.add(owner)
    session.flush()
    tenant.owner_user_id = owner.id
    session.add(tenant)
    session.commit()
    return owner


def add_lead(
    session: Session,
    owner: models.AppUser,
    *,
    created_at: datetime | None = None,
    **fields: Any,
) -> models.Lead:
    lead = models.Lead(
        tenant_id=fields.pop("tenant_id", owner.tenant_id),
        owner_id=fields.pop("owner_id", owner.id),
        **fields,
    )
    if created_at is not None:
        lead.created_at = created_at
    session.add(lead)
    session.commit()
    return lead


def add_message(
    session: Session,
    lead: models.Lead | None,
    *,
    content: str = "hello",
    **fields: Any,
) -> models.Message:
    message = models.Message(
        tenant_id=fields.pop("tenant_id", lead.tenant_id if lead else "t1"),
        lead_id=fields.pop("lead_id", lead.id if lead else None),
        owner_id=fields.pop("owner_id", lead.owner_id if lead else None),
        channel=fields.pop("channel", "chat"),
        direction=fields.pop("direction", "inbound"),
        content=content,
        **fields,
    )
    session.add(message)
    session.commit()
    return message


@pytest.fixture
def owner(session: Session) -> models.AppUser:
    return seed_tenant(session, "t1")


@pytest.fixture
def resolver(session: Session) -> ExternalIdentityResolver:
    return ExternalIdentityResolver(session)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def relay(transport: RecordingTransport) -> RealtimeRelay:
    return RealtimeRelay(transport)


@pytest.fixture
def chat() -> StubChat:
    return StubChat()


@pytest.fixture
def commerce() -> StubCommerce:
    return StubCommerce()


T0 = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def factories() -> SimpleNamespace:
    return SimpleNamespace(
        seed_tenant=seed_tenant,
        add_lead=add_lead,
        add_message=add_message,
        T0=T0,
        StubChat=StubChat,
        StubCommerce=StubCommerce,
    )
