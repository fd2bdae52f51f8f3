"""SQLModel declarative models for tenants, leads and their messages."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlmodel import Field, SQLModel

from creatorcrm.core.domain import (
    Channel,
    DeliveryStatus,
    ExternalKeyType,
    LeadSource,
    LeadStatus,
    MessageDirection,
)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def created_at_field() -> Any:
    return Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
        ),
    )


def updated_at_field() -> Any:
    return Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            onupdate=func.now(),
        ),
    )


def optional_datetime_field() -> Any:
    return Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


def _present(column: str) -> Any:
    return text(f"{column} IS NOT NULL")


def partial_unique_index(name: str, *columns: str, where: str) -> Index:
    """Unique index enforced only for rows where ``where`` is non-null."""

    return Index(
        name,
        *columns,
        unique=True,
        postgresql_where=_present(where),
        sqlite_where=_present(where),
    )


class UUIDPrimaryKey(SQLModel, table=False):
    """Mixin providing a UUID primary key."""

    id: UUID = Field(default_factory=uuid4, primary_key=True, nullable=False)


class Tenant(SQLModel, table=True):
    """Company partition; every other row carries its id."""

    __tablename__ = "tenants"

    id: str = Field(sa_column=Column(String(length=120), primary_key=True))
    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    name: str | None = Field(default=None, sa_column=Column(String(length=200), nullable=True))
    owner_user_id: UUID | None = Field(default=None, nullable=True)


class AppUser(UUIDPrimaryKey, table=True):
    """Internal account; one per (external user id, tenant)."""

    __tablename__ = "app_users"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    tenant_id: str = Field(foreign_key="tenants.id", nullable=False, index=True)
    external_user_id: str = Field(sa_column=Column(String(length=120), nullable=False))
    chat_user_id: str | None = Field(
        default=None,
        sa_column=Column(String(length=64), nullable=True, index=True),
    )
    email: str | None = Field(default=None, sa_column=Column(String(length=320), nullable=True))
    name: str | None = Field(default=None, sa_column=Column(String(length=200), nullable=True))
    last_login_at: datetime | None = optional_datetime_field()

    __table_args__ = (
        UniqueConstraint("external_user_id", "tenant_id", name="uq_app_user_external_tenant"),
    )


class ChannelBinding(UUIDPrimaryKey, table=True):
    """Chat-platform integration owned by a single app user."""

    __tablename__ = "channel_bindings"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    owner_id: UUID = Field(nullable=False, unique=True)
    tenant_id: str = Field(foreign_key="tenants.id", nullable=False, index=True)
    guild_id: str | None = Field(
        default=None,
        sa_column=Column(String(length=64), nullable=True, index=True),
    )
    guild_name: str | None = Field(default=None, sa_column=Column(String(length=200), nullable=True))
    bot_user_id: str | None = Field(default=None, sa_column=Column(String(length=64), nullable=True))
    chat_user_id: str | None = Field(default=None, sa_column=Column(String(length=64), nullable=True))
    chat_username: str | None = Field(
        default=None, sa_column=Column(String(length=120), nullable=True)
    )
    access_token: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    refresh_token: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    is_active: bool = Field(
        default=True, sa_column=Column(Boolean, nullable=False, default=True)
    )
    connected_at: datetime = created_at_field()
    last_sync_at: datetime | None = optional_datetime_field()
    synced_members_count: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, default=0)
    )
    synced_channels_count: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, default=0)
    )


class Lead(UUIDPrimaryKey, table=True):
    """A person a tenant is selling to, correlated by optional external keys."""

    __tablename__ = "leads"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    tenant_id: str = Field(foreign_key="tenants.id", nullable=False, index=True)
    owner_id: UUID = Field(foreign_key="app_users.id", nullable=False, index=True)
    name: str | None = Field(default=None, sa_column=Column(String(length=200), nullable=True))
    email: str | None = Field(default=None, sa_column=Column(String(length=320), nullable=True))
    username: str | None = Field(default=None, sa_column=Column(String(length=120), nullable=True))
    status: LeadStatus = Field(
        default=LeadStatus.NEW,
        sa_column=Column(
            String(length=32), nullable=False, default=LeadStatus.NEW.value, index=True
        ),
    )
    source: LeadSource = Field(
        default=LeadSource.MANUAL,
        sa_column=Column(String(length=32), nullable=False, default=LeadSource.MANUAL.value),
    )

    chat_user_id: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )
    commerce_membership_id: str | None = Field(
        default=None, sa_column=Column(String(length=120), nullable=True)
    )
    commerce_customer_id: str | None = Field(
        default=None, sa_column=Column(String(length=120), nullable=True)
    )
    chat_channel_id: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )

    won_at: datetime | None = optional_datetime_field()
    last_contact_at: datetime | None = optional_datetime_field()
    tags: list[str] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    notes: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    metadata_json: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column("metadata", JSON, nullable=True),
    )

    __table_args__ = (
        partial_unique_index(
            "uq_leads_tenant_chat_user", "tenant_id", "chat_user_id", where="chat_user_id"
        ),
        partial_unique_index(
            "uq_leads_tenant_commerce_membership",
            "tenant_id",
            "commerce_membership_id",
            where="commerce_membership_id",
        ),
        Index("ix_leads_tenant_commerce_customer", "tenant_id", "commerce_customer_id"),
    )

    def key(self, key_type: ExternalKeyType) -> str | None:
        return getattr(self, key_type.value)

    def set_key(self, key_type: ExternalKeyType, value: str | None) -> None:
        setattr(self, key_type.value, value)


class Message(UUIDPrimaryKey, table=True):
    """Inbound or outbound message stamped with its lead's tenant and owner."""

    __tablename__ = "messages"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    tenant_id: str = Field(foreign_key="tenants.id", nullable=False, index=True)
    lead_id: UUID | None = Field(
        default=None, foreign_key="leads.id", nullable=True, index=True
    )
    owner_id: UUID = Field(nullable=False, index=True)
    channel: Channel = Field(sa_column=Column(String(length=16), nullable=False))
    direction: MessageDirection = Field(sa_column=Column(String(length=16), nullable=False))
    delivery_status: DeliveryStatus = Field(
        default=DeliveryStatus.RECEIVED,
        sa_column=Column(
            String(length=16), nullable=False, default=DeliveryStatus.RECEIVED.value
        ),
    )
    content: str = Field(sa_column=Column(Text, nullable=False))
    external_message_id: str | None = Field(
        default=None, sa_column=Column(String(length=120), nullable=True)
    )
    external_channel_id: str | None = Field(
        default=None, sa_column=Column(String(length=120), nullable=True)
    )
    author_external_id: str | None = Field(
        default=None, sa_column=Column(String(length=120), nullable=True)
    )
    author_username: str | None = Field(
        default=None, sa_column=Column(String(length=120), nullable=True)
    )
    is_read: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    failure_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    metadata_json: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column("metadata", JSON, nullable=True),
    )

    __table_args__ = (
        partial_unique_index(
            "uq_messages_channel_external_id",
            "channel",
            "external_message_id",
            where="external_message_id",
        ),
        Index("ix_messages_lead_created", "lead_id", "created_at"),
    )


metadata = SQLModel.metadata
