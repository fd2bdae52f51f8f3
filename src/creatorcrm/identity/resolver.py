"""Resolve external platform users to exactly one lead per tenant."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from uuid import UUID

from prometheus_client import Counter
from sqlalchemy import asc
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from creatorcrm.core.db import models
from creatorcrm.core.domain import Channel, ExternalKeyType, LeadSource, LeadStatus
from creatorcrm.core.errors import IdentityResolutionError, NotFoundError

logger = logging.getLogger(__name__)

LEADS_CREATED = Counter(
    "creatorcrm_leads_created_total",
    "Leads created by the identity resolver.",
    ["source"],
)


@dataclass(slots=True)
class Resolution:
    lead: models.Lead
    created: bool


def _normalize_key(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ExternalIdentityResolver:
    """Find or create the lead that represents an external user inside a tenant.

    Lookups are keyed on ``(tenant_id, key)``; the partial unique indexes on
    ``leads`` turn concurrent creates for the same key into an ``IntegrityError``
    that is recovered here by re-reading the winning row.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def resolve(
        self,
        tenant_id: str,
        channel: Channel,
        external_key: str | None,
        fallback_display_name: str | None = None,
        *,
        key_type: ExternalKeyType | None = None,
        aliases: Mapping[ExternalKeyType, str | None] | None = None,
        source: LeadSource | None = None,
    ) -> models.Lead:
        return self.resolve_detailed(
            tenant_id,
            channel,
            external_key,
            fallback_display_name,
            key_type=key_type,
            aliases=aliases,
            source=source,
        ).lead

    def resolve_detailed(
        self,
        tenant_id: str,
        channel: Channel,
        external_key: str | None,
        fallback_display_name: str | None = None,
        *,
        key_type: ExternalKeyType | None = None,
        aliases: Mapping[ExternalKeyType, str | None] | None = None,
        source: LeadSource | None = None,
    ) -> Resolution:
        """Like :meth:`resolve` but also reports whether the lead was created."""

        channel = Channel(channel)
        key_type = key_type or ExternalKeyType.default_for(channel)
        if key_type.channel is not channel:
            raise ValueError(f"key type {key_type.value} does not belong to channel {channel.value}")

        keys = self._collect_keys(channel, key_type, external_key, aliases)
        if key_type not in keys:
            raise IdentityResolutionError(
                "event carries no external user key",
                details={"tenant_id": tenant_id, "key_type": key_type.value},
            )

        owner = self.resolve_tenant_owner(tenant_id)

        lead = self._lookup(tenant_id, keys)
        if lead is not None:
            self._refresh(lead, keys, fallback_display_name)
            return Resolution(lead=lead, created=False)

        lead_source = source or LeadSource(channel.value)
        lead = models.Lead(
            tenant_id=tenant_id,
            owner_id=owner.id,
            name=fallback_display_name,
            status=LeadStatus.NEW,
            source=lead_source,
        )
        for kind, value in keys.items():
            lead.set_key(kind, value)

        self._session.add(lead)
        try:
            self._session.flush()
        except IntegrityError:
            self._session.rollback()
            existing = self._lookup(tenant_id, keys)
            if existing is None:
                raise
            logger.info(
                "lead created concurrently; using existing row",
                extra={"tenant_id": tenant_id, "lead_id": str(existing.id)},
            )
            self._refresh(existing, keys, fallback_display_name)
            return Resolution(lead=existing, created=False)
        except Exception:
            self._session.rollback()
            raise

        LEADS_CREATED.labels(source=lead_source.value).inc()
        logger.info(
            "lead created",
            extra={
                "tenant_id": tenant_id,
                "lead_id": str(lead.id),
                "key_type": key_type.value,
                "owner_id": str(owner.id),
            },
        )
        return Resolution(lead=lead, created=True)

    def create_manual_lead(
        self,
        tenant_id: str,
        name: str,
        email: str | None = None,
        owner_id: UUID | None = None,
    ) -> models.Lead:
        """Create a keyless lead; manual leads are never de-duplicated."""

        if owner_id is None:
            owner_id = self.resolve_tenant_owner(tenant_id).id
        lead = models.Lead(
            tenant_id=tenant_id,
            owner_id=owner_id,
            name=name,
            email=email,
            status=LeadStatus.NEW,
            source=LeadSource.MANUAL,
        )
        self._session.add(lead)
        self._session.flush()
        LEADS_CREATED.labels(source=LeadSource.MANUAL.value).inc()
        return lead

    def find_lead(
        self, tenant_id: str, key_type: ExternalKeyType, external_key: str
    ) -> models.Lead | None:
        column = getattr(models.Lead, key_type.value)
        statement = (
            select(models.Lead)
            .where(models.Lead.tenant_id == tenant_id, column == external_key)
            .order_by(asc(models.Lead.created_at), asc(models.Lead.id))
        )
        return self._session.exec(statement).first()

    def resolve_tenant_owner(self, tenant_id: str) -> models.AppUser:
        """Return the designated owner of ``tenant_id`` or its earliest app user."""

        tenant = self._session.get(models.Tenant, tenant_id)
        if tenant is None:
            raise IdentityResolutionError(
                f"tenant {tenant_id} is not known", details={"tenant_id": tenant_id}
            )
        if tenant.owner_user_id is not None:
            owner = self._session.get(models.AppUser, tenant.owner_user_id)
            if owner is not None and owner.tenant_id == tenant_id:
                return owner
            logger.warning(
                "designated tenant owner missing; falling back to earliest user",
                extra={"tenant_id": tenant_id, "owner_user_id": str(tenant.owner_user_id)},
            )
        statement = (
            select(models.AppUser)
            .where(models.AppUser.tenant_id == tenant_id)
            .order_by(asc(models.AppUser.created_at), asc(models.AppUser.id))
        )
        owner = self._session.exec(statement).first()
        if owner is None:
            raise IdentityResolutionError(
                f"tenant {tenant_id} has no owning user", details={"tenant_id": tenant_id}
            )
        return owner

    def tenant_for_guild(self, guild_id: str | None) -> str | None:
        if not guild_id:
            return None
        statement = (
            select(models.ChannelBinding)
            .where(
                models.ChannelBinding.guild_id == guild_id,
                models.ChannelBinding.is_active == True,  # noqa: E712
            )
            .order_by(asc(models.ChannelBinding.connected_at))
        )
        binding = self._session.exec(statement).first()
        return binding.tenant_id if binding else None

    def is_app_user(self, tenant_id: str, chat_user_id: str | None) -> bool:
        """Whether ``chat_user_id`` belongs to one of the tenant's own accounts."""

        if not chat_user_id:
            return False
        user = self._session.exec(
            select(models.AppUser.id).where(
                models.AppUser.tenant_id == tenant_id,
                models.AppUser.chat_user_id == chat_user_id,
            )
        ).first()
        if user is not None:
            return True
        binding = self._session.exec(
            select(models.ChannelBinding.id).where(
                models.ChannelBinding.tenant_id == tenant_id,
                models.ChannelBinding.chat_user_id == chat_user_id,
            )
        ).first()
        return binding is not None

    def get_lead(self, lead_id: UUID) -> models.Lead:
        lead = self._session.get(models.Lead, lead_id)
        if lead is None:
            raise NotFoundError(f"lead {lead_id} not found", details={"lead_id": str(lead_id)})
        return lead

    @staticmethod
    def _collect_keys(
        channel: Channel,
        key_type: ExternalKeyType,
        external_key: str | None,
        aliases: Mapping[ExternalKeyType, str | None] | None,
    ) -> dict[ExternalKeyType, str]:
        keys: dict[ExternalKeyType, str] = {}
        primary = _normalize_key(external_key)
        if primary is not None:
            keys[key_type] = primary
        for kind, value in (aliases or {}).items():
            kind = ExternalKeyType(kind)
            if kind.channel is not channel:
                raise ValueError(
                    f"alias {kind.value} crosses channels; cross-channel links are manual"
                )
            value = _normalize_key(value)
            if value is not None and kind not in keys:
                keys[kind] = value
        return keys

    def _lookup(
        self, tenant_id: str, keys: Mapping[ExternalKeyType, str]
    ) -> models.Lead | None:
        for kind, value in keys.items():
            lead = self.find_lead(tenant_id, kind, value)
            if lead is not None:
                return lead
        return None

    def _refresh(
        self,
        lead: models.Lead,
        keys: Mapping[ExternalKeyType, str],
        fallback_display_name: str | None,
    ) -> None:
        if not lead.name and fallback_display_name:
            lead.name = fallback_display_name
        for kind, value in keys.items():
            if lead.key(kind) is not None:
                continue
            holder = self.find_lead(lead.tenant_id, kind, value)
            if holder is None:
                lead.set_key(kind, value)
        self._session.add(lead)
