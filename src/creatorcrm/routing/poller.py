"""Pull commerce conversations the platform does not push and route new customer messages."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from uuid import UUID

from prometheus_client import Counter
from sqlmodel import Session, col, select

from creatorcrm.core.db import models
from creatorcrm.core.domain import Channel, CommerceMessage, InboundEvent, PollResult
from creatorcrm.integrations import CommercePlatformCapability

from .router import MessageRouter

logger = logging.getLogger(__name__)

MESSAGES_POLLED = Counter(
    "creatorcrm_commerce_messages_polled_total",
    "Commerce conversation messages seen by the poller, by outcome.",
    ["outcome"],
)

_UNDATED = datetime.max.replace(tzinfo=UTC)


class CommerceMessagePoller:
    """Fetch recent history for a bounded batch of commerce leads.

    Only messages sent by the lead's own customer account are routed; the
    creator's replies are stored by :meth:`MessageRouter.send`. Messages go
    through :meth:`MessageRouter.route` and its ``(channel, external id)``
    dedupe. A failing lead is recorded in ``PollResult.errors`` and the batch continues.
    """

    def __init__(
        self,
        session: Session,
        router: MessageRouter,
        commerce: CommercePlatformCapability,
        *,
        batch_size: int = 50,
        history_limit: int = 10,
    ) -> None:
        self._session = session
        self._router = router
        self._commerce = commerce
        self._batch_size = batch_size
        self._history_limit = history_limit

    async def poll_messages(self, tenant_id: str) -> PollResult:
        result = PollResult()
        for lead_id, customer_id in self._leads_to_poll(tenant_id):
            result.leads_polled += 1
            try:
                await self._poll_lead(tenant_id, customer_id, result)
            except Exception as exc:
                self._session.rollback()
                logger.exception(
                    "commerce message poll failed",
                    extra={"tenant_id": tenant_id, "lead_id": str(lead_id)},
                )
                result.errors.append(f"{lead_id}: {exc}")
                MESSAGES_POLLED.labels(outcome="error").inc()
            await asyncio.sleep(0)

        logger.info(
            "commerce message poll finished", extra={"tenant_id": tenant_id, **result.as_dict()}
        )
        return result

    def _leads_to_poll(self, tenant_id: str) -> list[tuple[UUID, str]]:
        statement = (
            select(models.Lead.id, models.Lead.commerce_customer_id)
            .where(
                models.Lead.tenant_id == tenant_id,
                col(models.Lead.commerce_customer_id).is_not(None),
            )
            .order_by(col(models.Lead.last_contact_at).desc().nulls_last(), models.Lead.id)
            .limit(self._batch_size)
        )
        return list(self._session.exec(statement).all())

    async def _poll_lead(self, tenant_id: str, customer_id: str, result: PollResult) -> None:
        history = await self._commerce.list_messages(customer_id, limit=self._history_limit)
        result.fetched += len(history)
        for item in sorted(history, key=lambda message: message.created_at or _UNDATED):
            if item.sender_id != customer_id or self._already_stored(item.message_id):
                result.skipped += 1
                MESSAGES_POLLED.labels(outcome="skipped").inc()
                continue
            routed = await self._router.route(self._event_for(tenant_id, customer_id, item))
            if routed.rejected or routed.duplicate:
                result.skipped += 1
                MESSAGES_POLLED.labels(outcome="skipped").inc()
                continue
            result.routed += 1
            MESSAGES_POLLED.labels(outcome="routed").inc()

    def _already_stored(self, external_message_id: str) -> bool:
        statement = select(models.Message.id).where(
            models.Message.channel == Channel.COMMERCE.value,
            models.Message.external_message_id == external_message_id,
        )
        return self._session.exec(statement).first() is not None

    @staticmethod
    def _event_for(tenant_id: str, customer_id: str, item: CommerceMessage) -> InboundEvent:
        event = InboundEvent(
            channel=Channel.COMMERCE,
            external_user_id=customer_id,
            content=item.content,
            external_message_id=item.message_id,
            tenant_id=tenant_id,
            author_username=item.sender_username,
            metadata={"event": "poll"},
        )
        if item.created_at is not None:
            event.occurred_at = item.created_at
        return event
