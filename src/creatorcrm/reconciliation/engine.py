"""Tenant-scoped repair of duplicate leads, leaked self-leads and drifted messages."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from uuid import UUID

from prometheus_client import Counter
from sqlalchemy import asc, func
from sqlmodel import Session, col, select

from creatorcrm.core.db import models
from creatorcrm.core.domain import Channel, ExternalKeyType, ReconciliationReport
from creatorcrm.core.errors import IdentityResolutionError
from creatorcrm.core.logging import tenant_context
from creatorcrm.identity import ExternalIdentityResolver

logger = logging.getLogger(__name__)

RECONCILIATION_REPAIRS = Counter(
    "creatorcrm_reconciliation_repairs_total",
    "Rows repaired by the reconciliation engine.",
    ["kind"],
)

# Order matters: chat keys are the most common source of duplicates.
MERGE_KEYS: tuple[ExternalKeyType, ...] = (
    ExternalKeyType.CHAT_USER,
    ExternalKeyType.COMMERCE_MEMBERSHIP,
    ExternalKeyType.COMMERCE_CUSTOMER,
)


@dataclass(slots=True)
class GroupMerge:
    """Outcome of folding one duplicate group, counted once its commit lands."""

    key_type: ExternalKeyType
    survivor_id: UUID
    merged_ids: list[UUID]
    messages_reowned: int


class ReconciliationEngine:
    """Restore lead and message invariants for one tenant at a time.

    Passes run in a fixed order: self-lead cleanup, duplicate merge, orphan
    re-attachment, then ownership drift, so the final pass sees the owners
    produced by the earlier ones. Each duplicate group is committed on its own
    and a failing group does not stop the run. A second run finds nothing to
    repair.
    """

    def __init__(self, session: Session, resolver: ExternalIdentityResolver | None = None) -> None:
        self._session = session
        self._resolver = resolver or ExternalIdentityResolver(session)

    async def reconcile_all(self) -> list[ReconciliationReport]:
        tenant_ids = self._session.exec(select(models.Tenant.id).order_by(models.Tenant.id)).all()
        reports = []
        for tenant_id in tenant_ids:
            with tenant_context(tenant_id):
                reports.append(await self.reconcile_tenant(tenant_id))
        return reports

    async def reconcile_tenant(self, tenant_id: str) -> ReconciliationReport:
        report = ReconciliationReport(tenant_id=tenant_id)
        logger.info("reconciliation started", extra={"tenant_id": tenant_id})

        self._remove_self_leads(tenant_id, report)
        await asyncio.sleep(0)
        self._reown_misplaced_leads(tenant_id, report)
        await asyncio.sleep(0)

        for key_type in MERGE_KEYS:
            for value in self._duplicate_values(tenant_id, key_type):
                try:
                    merge = self._merge_group(tenant_id, key_type, value)
                    self._session.commit()
                except Exception as exc:
                    self._session.rollback()
                    logger.exception(
                        "duplicate merge failed",
                        extra={"tenant_id": tenant_id, "key_type": key_type.value, "value": value},
                    )
                    report.errors.append(f"merge {key_type.value}={value}: {exc}")
                else:
                    if merge is not None:
                        self._record_merge(tenant_id, merge, report)
                await asyncio.sleep(0)

        self._reattach_orphans(tenant_id, report)
        await asyncio.sleep(0)
        self._fix_ownership_drift(tenant_id, report)

        self._record_metrics(report)
        logger.info("reconciliation finished", extra=report.as_dict())
        return report

    def _remove_self_leads(self, tenant_id: str, report: ReconciliationReport) -> None:
        """Delete leads that are really another tenant's own chat account."""

        foreign_users = self._session.exec(
            select(models.AppUser).where(
                models.AppUser.tenant_id != tenant_id,
                col(models.AppUser.chat_user_id).is_not(None),
            )
        ).all()
        accounts: dict[str, set[UUID]] = defaultdict(set)
        for user in foreign_users:
            accounts[user.chat_user_id].add(user.id)
        if not accounts:
            return

        leads = self._session.exec(
            select(models.Lead).where(
                models.Lead.tenant_id == tenant_id,
                col(models.Lead.chat_user_id).in_(list(accounts)),
            )
        ).all()
        for lead in leads:
            if lead.owner_id in accounts[lead.chat_user_id]:
                continue
            messages = self._messages_for(lead.id)
            for message in messages:
                self._session.delete(message)
            self._session.flush()
            self._session.delete(lead)
            report.self_leads_deleted += 1
            report.self_lead_messages_deleted += len(messages)
            logger.warning(
                "self-lead removed",
                extra={
                    "tenant_id": tenant_id,
                    "lead_id": str(lead.id),
                    "chat_user_id": lead.chat_user_id,
                    "messages_deleted": len(messages),
                },
            )
        self._session.commit()

    def _reown_misplaced_leads(self, tenant_id: str, report: ReconciliationReport) -> None:
        """Point leads whose owner is gone or lives in another tenant at the tenant owner."""

        statement = (
            select(models.Lead)
            .outerjoin(models.AppUser, models.Lead.owner_id == models.AppUser.id)
            .where(
                models.Lead.tenant_id == tenant_id,
                (col(models.AppUser.id).is_(None)) | (models.AppUser.tenant_id != tenant_id),
            )
        )
        leads = self._session.exec(statement).all()
        if not leads:
            return
        try:
            owner = self._resolver.resolve_tenant_owner(tenant_id)
        except IdentityResolutionError as exc:
            report.errors.append(f"reown leads: {exc.message}")
            return
        for lead in leads:
            lead.owner_id = owner.id
            self._session.add(lead)
            report.leads_reowned += 1
        self._session.commit()

    def _duplicate_values(self, tenant_id: str, key_type: ExternalKeyType) -> list[str]:
        column = getattr(models.Lead, key_type.value)
        statement = (
            select(column)
            .where(models.Lead.tenant_id == tenant_id, col(column).is_not(None))
            .group_by(column)
            .having(func.count() > 1)
            .order_by(column)
        )
        return list(self._session.exec(statement).all())

    def _merge_group(
        self,
        tenant_id: str,
        key_type: ExternalKeyType,
        value: str,
    ) -> GroupMerge | None:
        """Fold every lead sharing ``value`` into the oldest one, without committing."""

        column = getattr(models.Lead, key_type.value)
        leads = self._session.exec(
            select(models.Lead)
            .where(models.Lead.tenant_id == tenant_id, column == value)
            .order_by(asc(models.Lead.created_at), asc(models.Lead.id))
        ).all()
        if len(leads) < 2:
            return None
        survivor, duplicates = leads[0], leads[1:]

        absorbed: dict[ExternalKeyType, str] = {}
        moved = 0
        for duplicate in duplicates:
            for message in self._messages_for(duplicate.id):
                message.lead_id = survivor.id
                message.owner_id = survivor.owner_id
                self._session.add(message)
                moved += 1
            for kind in MERGE_KEYS:
                other = duplicate.key(kind)
                if other and survivor.key(kind) is None and kind not in absorbed:
                    absorbed[kind] = other
            survivor.name = survivor.name or duplicate.name
            survivor.email = survivor.email or duplicate.email
            survivor.username = survivor.username or duplicate.username
            survivor.chat_channel_id = survivor.chat_channel_id or duplicate.chat_channel_id
        self._session.flush()

        for duplicate in duplicates:
            self._session.delete(duplicate)
        self._session.flush()

        for kind, other in absorbed.items():
            survivor.set_key(kind, other)
        self._session.add(survivor)
        self._session.flush()

        return GroupMerge(
            key_type=key_type,
            survivor_id=survivor.id,
            merged_ids=[duplicate.id for duplicate in duplicates],
            messages_reowned=moved,
        )

    def _record_merge(
        self, tenant_id: str, merge: GroupMerge, report: ReconciliationReport
    ) -> None:
        report.duplicate_groups += 1
        report.leads_merged += len(merge.merged_ids)
        report.messages_reowned += merge.messages_reowned
        report.survivor_ids.append(merge.survivor_id)
        logger.info(
            "duplicate leads merged",
            extra={
                "tenant_id": tenant_id,
                "key_type": merge.key_type.value,
                "survivor_id": str(merge.survivor_id),
                "merged": [str(lead_id) for lead_id in merge.merged_ids],
                "messages_reowned": merge.messages_reowned,
            },
        )

    def _reattach_orphans(self, tenant_id: str, report: ReconciliationReport) -> None:
        """Re-link messages whose lead no longer exists using the author's key."""

        statement = (
            select(models.Message)
            .outerjoin(models.Lead, models.Message.lead_id == models.Lead.id)
            .where(models.Message.tenant_id == tenant_id, col(models.Lead.id).is_(None))
        )
        orphans = self._session.exec(statement).all()
        for message in orphans:
            lead = self._lead_for_author(tenant_id, message)
            if lead is None:
                report.orphans_unresolved += 1
                continue
            message.lead_id = lead.id
            message.owner_id = lead.owner_id
            self._session.add(message)
            report.orphans_reattached += 1
        if report.orphans_reattached:
            self._session.commit()
        if report.orphans_unresolved:
            logger.warning(
                "orphaned messages left unresolved",
                extra={"tenant_id": tenant_id, "count": report.orphans_unresolved},
            )

    def _fix_ownership_drift(self, tenant_id: str, report: ReconciliationReport) -> None:
        statement = (
            select(models.Message, models.Lead)
            .join(models.Lead, models.Message.lead_id == models.Lead.id)
            .where(
                models.Message.tenant_id == tenant_id,
                models.Message.owner_id != models.Lead.owner_id,
            )
        )
        for message, lead in self._session.exec(statement).all():
            message.owner_id = lead.owner_id
            self._session.add(message)
            report.ownership_drift_fixed += 1
        if report.ownership_drift_fixed:
            self._session.commit()

    def _lead_for_author(self, tenant_id: str, message: models.Message) -> models.Lead | None:
        author = message.author_external_id
        if not author:
            return None
        if str(getattr(message.channel, "value", message.channel)) == Channel.CHAT.value:
            kinds = (ExternalKeyType.CHAT_USER,)
        else:
            kinds = (ExternalKeyType.COMMERCE_CUSTOMER, ExternalKeyType.COMMERCE_MEMBERSHIP)
        for kind in kinds:
            lead = self._resolver.find_lead(tenant_id, kind, author)
            if lead is not None:
                return lead
        return None

    def _messages_for(self, lead_id: UUID) -> list[models.Message]:
        return list(
            self._session.exec(select(models.Message).where(models.Message.lead_id == lead_id)).all()
        )

    @staticmethod
    def _record_metrics(report: ReconciliationReport) -> None:
        counts = {
            "lead_merged": report.leads_merged,
            "self_lead_deleted": report.self_leads_deleted,
            "lead_reowned": report.leads_reowned,
            "orphan_reattached": report.orphans_reattached,
            "ownership_drift": report.ownership_drift_fixed,
        }
        for kind, count in counts.items():
            if count:
                RECONCILIATION_REPAIRS.labels(kind=kind).inc(count)
