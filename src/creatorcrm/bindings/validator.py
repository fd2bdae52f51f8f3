"""Validate chat bindings against the guilds the bot can currently reach."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import Counter
from sqlalchemy import asc
from sqlmodel import Session, select

from creatorcrm.core.config import BindingFixMode
from creatorcrm.core.db import models
from creatorcrm.core.domain import BindingValidation
from creatorcrm.core.errors import ExternalPlatformError, StaleBindingError
from creatorcrm.integrations import ChatPlatformCapability

logger = logging.getLogger(__name__)

STALE_BINDINGS = Counter(
    "creatorcrm_stale_bindings_total",
    "Stale chat bindings detected, by reason.",
    ["reason"],
)

GUILD_UNSET = "guild unset"
GUILD_INACCESSIBLE = "guild inaccessible"
OWNER_MISSING = "owner missing"


@dataclass(slots=True)
class BindingAuditEntry:
    binding_id: str
    tenant_id: str
    guild_id: str | None
    reason: str
    fixed_with: BindingFixMode | None = None
    rebound_to: str | None = None


@dataclass(slots=True)
class BindingAuditReport:
    """Outcome of checking every active binding."""

    checked: int = 0
    stale: list[BindingAuditEntry] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def fixed(self) -> int:
        return sum(1 for entry in self.stale if entry.fixed_with is not None)

    def as_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "fixed": self.fixed,
            "stale": [
                {
                    "binding_id": entry.binding_id,
                    "tenant_id": entry.tenant_id,
                    "guild_id": entry.guild_id,
                    "reason": entry.reason,
                    "fixed_with": entry.fixed_with.value if entry.fixed_with else None,
                    "rebound_to": entry.rebound_to,
                }
                for entry in self.stale
            ],
            "errors": list(self.errors),
        }


class ChannelBindingValidator:
    """Check and repair tenant chat bindings.

    Conservative repair deactivates the binding and clears its volatile fields
    so the owner has to reconnect. Aggressive repair rebinds to the first guild
    the bot can see and is only used when an operator asks for it.
    """

    def __init__(
        self,
        session: Session,
        chat: ChatPlatformCapability,
        *,
        default_mode: BindingFixMode = BindingFixMode.CONSERVATIVE,
    ) -> None:
        self._session = session
        self._chat = chat
        self._default_mode = default_mode

    async def validate_binding(
        self,
        binding: models.ChannelBinding,
        *,
        accessible: set[str] | None = None,
    ) -> BindingValidation:
        if not binding.guild_id:
            return BindingValidation.stale(GUILD_UNSET)
        if self._session.get(models.AppUser, binding.owner_id) is None:
            return BindingValidation.stale(OWNER_MISSING)
        if accessible is None:
            accessible = await self._chat.list_accessible_guilds()
        if binding.guild_id not in accessible:
            return BindingValidation.stale(GUILD_INACCESSIBLE)
        return BindingValidation.ok()

    async def fix_binding(
        self,
        binding: models.ChannelBinding,
        mode: BindingFixMode | None = None,
        *,
        accessible: set[str] | None = None,
    ) -> BindingFixMode:
        """Repair ``binding`` in place and return the mode actually applied."""

        mode = BindingFixMode(mode or self._default_mode)
        if mode is BindingFixMode.AGGRESSIVE:
            if accessible is None:
                accessible = await self._chat.list_accessible_guilds()
            if accessible:
                guild_id = sorted(accessible)[0]
                logger.warning(
                    "rebinding chat integration to accessible guild",
                    extra={
                        "tenant_id": binding.tenant_id,
                        "binding_id": str(binding.id),
                        "previous_guild_id": binding.guild_id,
                        "guild_id": guild_id,
                    },
                )
                binding.guild_id = guild_id
                binding.guild_name = None
                binding.is_active = True
                binding.last_sync_at = None
                binding.synced_members_count = 0
                binding.synced_channels_count = 0
                self._session.add(binding)
                self._session.commit()
                return BindingFixMode.AGGRESSIVE
            logger.info(
                "no accessible guild for aggressive rebind; deactivating instead",
                extra={"tenant_id": binding.tenant_id, "binding_id": str(binding.id)},
            )

        binding.is_active = False
        binding.guild_id = None
        binding.guild_name = None
        binding.access_token = None
        binding.refresh_token = None
        binding.last_sync_at = None
        binding.synced_members_count = 0
        binding.synced_channels_count = 0
        self._session.add(binding)
        self._session.commit()
        logger.info(
            "chat binding deactivated",
            extra={"tenant_id": binding.tenant_id, "binding_id": str(binding.id)},
        )
        return BindingFixMode.CONSERVATIVE

    async def ensure_valid(self, tenant_id: str) -> models.ChannelBinding:
        """Return the tenant's active binding or raise ``StaleBindingError``."""

        binding = self.active_binding(tenant_id)
        if binding is None:
            raise StaleBindingError(
                f"tenant {tenant_id} has no active chat binding",
                tenant_id=tenant_id,
                reason="no active binding",
            )
        validation = await self.validate_binding(binding)
        if not validation.valid:
            STALE_BINDINGS.labels(reason=validation.reason).inc()
            raise StaleBindingError(
                f"chat binding for tenant {tenant_id} is stale: {validation.reason}",
                tenant_id=tenant_id,
                reason=validation.reason or "stale",
            )
        return binding

    async def audit_bindings(self, fix_mode: BindingFixMode | None = None) -> BindingAuditReport:
        """Check every active binding, repairing stale ones when ``fix_mode`` is set."""

        report = BindingAuditReport()
        bindings = self._session.exec(
            select(models.ChannelBinding)
            .where(models.ChannelBinding.is_active == True)  # noqa: E712
            .order_by(asc(models.ChannelBinding.connected_at))
        ).all()
        if not bindings:
            return report

        try:
            accessible = await self._chat.list_accessible_guilds()
        except ExternalPlatformError as exc:
            report.errors.append(exc.message)
            return report

        for binding in bindings:
            report.checked += 1
            validation = await self.validate_binding(binding, accessible=accessible)
            if validation.valid:
                continue
            reason = validation.reason or "stale"
            STALE_BINDINGS.labels(reason=reason).inc()
            entry = BindingAuditEntry(
                binding_id=str(binding.id),
                tenant_id=binding.tenant_id,
                guild_id=binding.guild_id,
                reason=reason,
            )
            if fix_mode is not None:
                try:
                    entry.fixed_with = await self.fix_binding(
                        binding, fix_mode, accessible=accessible
                    )
                    entry.rebound_to = (
                        binding.guild_id if entry.fixed_with is BindingFixMode.AGGRESSIVE else None
                    )
                except Exception as exc:
                    self._session.rollback()
                    logger.exception(
                        "binding repair failed", extra={"binding_id": entry.binding_id}
                    )
                    report.errors.append(f"binding {entry.binding_id}: {exc}")
            report.stale.append(entry)
        return report

    def active_binding(self, tenant_id: str) -> models.ChannelBinding | None:
        statement = (
            select(models.ChannelBinding)
            .where(
                models.ChannelBinding.tenant_id == tenant_id,
                models.ChannelBinding.is_active == True,  # noqa: E712
            )
            .order_by(asc(models.ChannelBinding.connected_at))
        )
        return self._session.exec(statement).first()
