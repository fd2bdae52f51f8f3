"""Import commerce memberships and guild members as tenant leads."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from prometheus_client import Counter
from sqlmodel import Session

from creatorcrm.bindings import ChannelBindingValidator
from creatorcrm.core.db import models
from creatorcrm.core.domain import (
    Channel,
    ExternalKeyType,
    LeadSource,
    LeadStatus,
    MembershipRecord,
    SyncResult,
)
from creatorcrm.core.errors import ExternalPlatformError, ValidationError
from creatorcrm.identity import ExternalIdentityResolver
from creatorcrm.integrations import ChatPlatformCapability, CommercePlatformCapability

logger = logging.getLogger(__name__)

SYNC_RECORDS = Counter(
    "creatorcrm_member_sync_records_total",
    "Member records processed by sync runs, by outcome.",
    ["source", "outcome"],
)

COMMERCE_SYNC_TAG = "commerce-sync"
CHAT_SYNC_TAG = "chat-member"


class MemberSyncOrchestrator:
    """Turn platform member lists into leads, one committed record at a time."""

    def __init__(
        self,
        session: Session,
        resolver: ExternalIdentityResolver,
        commerce: CommercePlatformCapability | None = None,
        *,
        chat: ChatPlatformCapability | None = None,
        validator: ChannelBindingValidator | None = None,
        fallback_name: str = "Commerce Member",
    ) -> None:
        self._session = session
        self._resolver = resolver
        self._commerce = commerce
        self._chat = chat
        self._validator = validator
        self._fallback_name = fallback_name

    @property
    def commerce_enabled(self) -> bool:
        return self._commerce is not None

    async def sync_members(self, tenant_id: str) -> SyncResult:
        """Import every commerce membership of ``tenant_id``.

        Listing failures raise ``ExternalPlatformError``; failures on a single
        record are collected in ``SyncResult.errors`` and the batch continues.
        """

        if self._commerce is None:
            raise ValueError("commerce capability is required for member sync")
        self._resolver.resolve_tenant_owner(tenant_id)

        memberships = await self._commerce.list_memberships(tenant_id)
        result = SyncResult(total=len(memberships))
        logger.info(
            "commerce member sync started",
            extra={"tenant_id": tenant_id, "memberships": len(memberships)},
        )

        for record in memberships:
            if not record.user_id:
                logger.warning(
                    "membership has no user id; skipping",
                    extra={"tenant_id": tenant_id, "membership_id": record.membership_id},
                )
                result.skipped += 1
                SYNC_RECORDS.labels(source="commerce", outcome="skipped").inc()
                continue
            try:
                _, created = await self._import_record(tenant_id, record)
            except Exception as exc:
                self._session.rollback()
                logger.exception(
                    "membership import failed",
                    extra={"tenant_id": tenant_id, "membership_id": record.membership_id},
                )
                result.errors.append(f"{record.membership_id}: {exc}")
                SYNC_RECORDS.labels(source="commerce", outcome="error").inc()
                continue
            if created:
                result.created += 1
            else:
                result.updated += 1
            SYNC_RECORDS.labels(
                source="commerce", outcome="created" if created else "updated"
            ).inc()

        logger.info("commerce member sync finished", extra={"tenant_id": tenant_id, **result.as_dict()})
        return result

    async def import_membership(
        self, tenant_id: str, membership_id: str, user_id: str
    ) -> models.Lead:
        """Import a single membership, as delivered by an activation webhook."""

        if self._commerce is None:
            raise ValueError("commerce capability is required for member import")
        record = MembershipRecord(membership_id=membership_id, user_id=user_id)
        lead, _ = await self._import_record(tenant_id, record)
        return lead

    async def sync_guild_members(self, tenant_id: str) -> SyncResult:
        """Import the members of the tenant's bound guild as chat leads.

        The binding is validated first; a stale binding raises
        ``StaleBindingError`` before any member is fetched.
        """

        if self._chat is None or self._validator is None:
            raise ValueError("chat capability and binding validator are required for guild sync")
        binding = await self._validator.ensure_valid(tenant_id)
        members = await self._chat.list_guild_members(binding.guild_id)
        result = SyncResult(total=len(members))

        for member in members:
            if member.is_bot or self._resolver.is_app_user(tenant_id, member.user_id):
                result.skipped += 1
                SYNC_RECORDS.labels(source="chat", outcome="skipped").inc()
                continue
            try:
                resolution = self._resolver.resolve_detailed(
                    tenant_id,
                    Channel.CHAT,
                    member.user_id,
                    member.username,
                    source=LeadSource.CHAT,
                )
                lead = resolution.lead
                if member.username and not lead.username:
                    lead.username = member.username
                if resolution.created:
                    lead.tags = [CHAT_SYNC_TAG]
                    if binding.guild_name:
                        lead.notes = f"Synced from chat server: {binding.guild_name}"
                self._session.add(lead)
                self._session.commit()
            except Exception as exc:
                self._session.rollback()
                logger.exception(
                    "guild member import failed",
                    extra={"tenant_id": tenant_id, "chat_user_id": member.user_id},
                )
                result.errors.append(f"{member.user_id}: {exc}")
                SYNC_RECORDS.labels(source="chat", outcome="error").inc()
                continue
            if resolution.created:
                result.created += 1
            else:
                result.updated += 1
            SYNC_RECORDS.labels(
                source="chat", outcome="created" if resolution.created else "updated"
            ).inc()
            await asyncio.sleep(0)

        binding.last_sync_at = datetime.now(tz=UTC)
        binding.synced_members_count = result.created + result.updated
        self._session.add(binding)
        self._session.commit()
        logger.info("guild member sync finished", extra={"tenant_id": tenant_id, **result.as_dict()})
        return result

    async def _import_record(
        self, tenant_id: str, record: MembershipRecord
    ) -> tuple[models.Lead, bool]:
        if self._commerce is None:
            raise ValidationError("commerce capability is not configured")
        name = self._fallback_name
        email = None
        try:
            user = await self._commerce.get_user(record.user_id)
        except ExternalPlatformError as exc:
            logger.warning(
                "commerce user lookup failed; using fallback name",
                extra={"tenant_id": tenant_id, "user_id": record.user_id, "error": exc.message},
            )
        else:
            name = user.username or user.name or self._fallback_name
            email = user.email

        resolution = self._resolver.resolve_detailed(
            tenant_id,
            Channel.COMMERCE,
            record.membership_id,
            name,
            key_type=ExternalKeyType.COMMERCE_MEMBERSHIP,
            aliases={ExternalKeyType.COMMERCE_CUSTOMER: record.user_id},
            source=LeadSource.COMMERCE,
        )
        lead = resolution.lead
        now = datetime.now(tz=UTC)
        if resolution.created:
            lead.status = LeadStatus.WON
            lead.won_at = now
            lead.email = email
            lead.tags = [COMMERCE_SYNC_TAG]
        elif lead.status != LeadStatus.WON:
            lead.status = LeadStatus.WON
            lead.won_at = lead.won_at or now
        if email and not lead.email:
            lead.email = email
        self._session.add(lead)
        self._session.commit()
        return lead, resolution.created
