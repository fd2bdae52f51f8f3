"""Domain data structures shared across the engine."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID


class Channel(str, Enum):
    """External surfaces a lead can be reached through."""

    CHAT = "chat"
    COMMERCE = "commerce"


class ExternalKeyType(str, Enum):
    """Correlation keys a lead may carry, each bound to one channel."""

    CHAT_USER = "chat_user_id"
    COMMERCE_MEMBERSHIP = "commerce_membership_id"
    COMMERCE_CUSTOMER = "commerce_customer_id"

    @property
    def channel(self) -> Channel:
        if self is ExternalKeyType.CHAT_USER:
            return Channel.CHAT
        return Channel.COMMERCE

    @classmethod
    def default_for(cls, channel: Channel) -> ExternalKeyType:
        if channel is Channel.CHAT:
            return cls.CHAT_USER
        return cls.COMMERCE_CUSTOMER


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    WON = "won"
    LOST = "lost"


class LeadSource(str, Enum):
    CHAT = "chat"
    COMMERCE = "commerce"
    MANUAL = "manual"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DeliveryStatus(str, Enum):
    RECEIVED = "received"
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class RouteState(str, Enum):
    """Stages a routed message moves through."""

    RECEIVED = "received"
    RESOLVED = "resolved"
    PERSISTED = "persisted"
    RELAYED = "relayed"
    TERMINAL = "terminal"
    REJECTED = "rejected"


@dataclass(slots=True)
class InboundEvent:
    """Normalized message event delivered by either platform."""

    channel: Channel
    external_user_id: str | None
    content: str
    external_message_id: str | None = None
    tenant_id: str | None = None
    direction: MessageDirection = MessageDirection.INBOUND
    guild_id: str | None = None
    external_channel_id: str | None = None
    author_username: str | None = None
    author_is_bot: bool = False
    occurred_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    metadata: Mapping[str, Any] | None = None


@dataclass(slots=True)
class RoutedMessage:
    """Outcome of routing a single message through the engine."""

    state: RouteState
    tenant_id: str | None = None
    lead_id: UUID | None = None
    message_id: UUID | None = None
    lead_created: bool = False
    duplicate: bool = False
    rejection_reason: str | None = None
    rooms: list[str] = field(default_factory=list)
    transitions: list[RouteState] = field(default_factory=list)

    def advance(self, state: RouteState) -> None:
        self.transitions.append(state)
        self.state = state

    @property
    def rejected(self) -> bool:
        return self.state is RouteState.REJECTED


@dataclass(slots=True)
class MembershipRecord:
    """Membership row as reported by the commerce platform."""

    membership_id: str
    user_id: str | None


@dataclass(slots=True)
class CommerceUser:
    user_id: str
    email: str | None = None
    name: str | None = None
    username: str | None = None


@dataclass(slots=True)
class CommerceMessage:
    """One message of a commerce-platform conversation."""

    message_id: str
    sender_id: str | None
    content: str
    sender_username: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class PollResult:
    """Counts produced by one commerce message polling run."""

    leads_polled: int = 0
    fetched: int = 0
    routed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "leads_polled": self.leads_polled,
            "fetched": self.fetched,
            "routed": self.routed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass(slots=True)
class GuildMember:
    user_id: str
    username: str | None = None
    is_bot: bool = False


@dataclass(slots=True)
class SyncResult:
    """Aggregate counts produced by a member sync run."""

    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass(slots=True)
class ReconciliationReport:
    """Counts of the repairs applied to a single tenant."""

    tenant_id: str
    duplicate_groups: int = 0
    leads_merged: int = 0
    messages_reowned: int = 0
    survivor_ids: list[UUID] = field(default_factory=list)
    self_leads_deleted: int = 0
    self_lead_messages_deleted: int = 0
    leads_reowned: int = 0
    orphans_reattached: int = 0
    orphans_unresolved: int = 0
    ownership_drift_fixed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def repairs(self) -> int:
        return (
            self.leads_merged
            + self.self_leads_deleted
            + self.leads_reowned
            + self.orphans_reattached
            + self.ownership_drift_fixed
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "duplicate_groups": self.duplicate_groups,
            "leads_merged": self.leads_merged,
            "messages_reowned": self.messages_reowned,
            "survivor_ids": [str(survivor) for survivor in self.survivor_ids],
            "self_leads_deleted": self.self_leads_deleted,
            "self_lead_messages_deleted": self.self_lead_messages_deleted,
            "leads_reowned": self.leads_reowned,
            "orphans_reattached": self.orphans_reattached,
            "orphans_unresolved": self.orphans_unresolved,
            "ownership_drift_fixed": self.ownership_drift_fixed,
            "errors": list(self.errors),
        }


@dataclass(slots=True)
class BindingValidation:
    """Result of checking a chat binding against the bot's guild access."""

    valid: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> BindingValidation:
        return cls(valid=True)

    @classmethod
    def stale(cls, reason: str) -> BindingValidation:
        return cls(valid=False, reason=reason)
