"""Route inbound and outbound messages to their lead and relay them."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from uuid import UUID

from prometheus_client import Counter
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from creatorcrm.core.db import models
from creatorcrm.core.domain import (
    Channel,
    DeliveryStatus,
    InboundEvent,
    LeadSource,
    MessageDirection,
    RoutedMessage,
    RouteState,
)
from creatorcrm.core.errors import (
    ConflictError,
    ExternalPlatformError,
    IdentityResolutionError,
    NotFoundError,
    ValidationError,
)
from creatorcrm.identity import ExternalIdentityResolver
from creatorcrm.integrations import ChatPlatformCapability, CommercePlatformCapability

from .relay import RealtimeRelay

logger = logging.getLogger(__name__)

MESSAGES_ROUTED = Counter(
    "creatorcrm_messages_routed_total",
    "Messages handled by the router, by final outcome.",
    ["channel", "outcome"],
)

_RESENDABLE = {DeliveryStatus.PENDING.value, DeliveryStatus.FAILED.value}


def _status_value(value: object) -> str:
    return str(getattr(value, "value", value))


class MessageRouter:
    """Drive a message through ``received -> resolved -> persisted -> relayed``.

    Every write is committed before the relay runs so a subscriber never sees a
    message that is not durable, and the relay is awaited in the calling task so
    messages for one lead reach its room in persistence order.
    """

    def __init__(
        self,
        session: Session,
        resolver: ExternalIdentityResolver,
        relay: RealtimeRelay,
        *,
        chat: ChatPlatformCapability | None = None,
        commerce: CommercePlatformCapability | None = None,
        send_timeout: float = 20.0,
    ) -> None:
        self._session = session
        self._resolver = resolver
        self._relay = relay
        self._chat = chat
        self._commerce = commerce
        self._send_timeout = send_timeout

    async def route(self, event: InboundEvent) -> RoutedMessage:
        """Resolve, persist and relay one inbound message."""

        channel = Channel(event.channel)
        result = RoutedMessage(state=RouteState.RECEIVED, transitions=[RouteState.RECEIVED])

        tenant_id = event.tenant_id or self._resolver.tenant_for_guild(event.guild_id)
        if not tenant_id:
            return self._reject(result, channel, "tenant unresolved")
        result.tenant_id = tenant_id

        if event.author_is_bot:
            return self._reject(result, channel, "bot author")

        author_key = (event.external_user_id or "").strip()
        if not author_key:
            return self._reject(result, channel, "missing author key")

        if channel is Channel.CHAT and self._resolver.is_app_user(tenant_id, author_key):
            return self._reject(result, channel, "sender is an app user")

        existing = self._find_message(channel, event.external_message_id)
        if existing is not None:
            return await self._relay_duplicate(result, channel, existing)

        try:
            resolution = self._resolver.resolve_detailed(
                tenant_id,
                channel,
                author_key,
                event.author_username,
                source=LeadSource(channel.value),
            )
        except IdentityResolutionError as exc:
            return self._reject(result, channel, exc.message)

        lead = resolution.lead
        result.lead_id = lead.id
        result.lead_created = resolution.created
        result.advance(RouteState.RESOLVED)

        message = models.Message(
            tenant_id=tenant_id,
            lead_id=lead.id,
            owner_id=lead.owner_id,
            channel=channel,
            direction=event.direction,
            delivery_status=DeliveryStatus.RECEIVED,
            content=event.content,
            external_message_id=event.external_message_id,
            external_channel_id=event.external_channel_id,
            author_external_id=author_key,
            author_username=event.author_username,
            metadata_json=dict(event.metadata) if event.metadata else None,
        )
        lead.last_contact_at = event.occurred_at
        if channel is Channel.CHAT and event.external_channel_id:
            lead.chat_channel_id = event.external_channel_id
        self._session.add(lead)
        self._session.add(message)
        try:
            self._session.commit()
        except IntegrityError:
            # Another delivery of the same message won the insert.
            self._session.rollback()
            existing = self._find_message(channel, event.external_message_id)
            if existing is None:
                raise
            return await self._relay_duplicate(result, channel, existing)

        result.message_id = message.id
        result.advance(RouteState.PERSISTED)

        result.rooms = await self._relay_message(message)
        result.advance(RouteState.RELAYED)
        result.advance(RouteState.TERMINAL)
        MESSAGES_ROUTED.labels(channel=channel.value, outcome="persisted").inc()
        logger.info(
            "inbound message routed",
            extra={
                "tenant_id": tenant_id,
                "lead_id": str(lead.id),
                "message_id": str(message.id),
                "lead_created": resolution.created,
            },
        )
        return result

    async def send(
        self,
        tenant_id: str,
        lead_id: UUID,
        content: str,
        channel: Channel,
    ) -> RoutedMessage:
        """Deliver an outbound message to a lead through ``channel``.

        The message is stored as ``pending`` before the external call so a crash
        or timeout leaves a row :meth:`resend` can pick up.
        """

        channel = Channel(channel)
        lead = self._session.get(models.Lead, lead_id)
        if lead is None or lead.tenant_id != tenant_id:
            raise NotFoundError(
                f"lead {lead_id} not found", details={"tenant_id": tenant_id, "lead_id": str(lead_id)}
            )
        self._target_for(lead, channel)

        message = models.Message(
            tenant_id=tenant_id,
            lead_id=lead.id,
            owner_id=lead.owner_id,
            channel=channel,
            direction=MessageDirection.OUTBOUND,
            delivery_status=DeliveryStatus.PENDING,
            content=content,
        )
        self._session.add(message)
        self._session.commit()
        return await self._deliver(message, lead)

    async def resend(self, message_id: UUID) -> RoutedMessage:
        """Retry delivery of a pending or failed outbound message."""

        message = self._session.get(models.Message, message_id)
        if message is None:
            raise NotFoundError(
                f"message {message_id} not found", details={"message_id": str(message_id)}
            )
        if (
            _status_value(message.direction) != MessageDirection.OUTBOUND.value
            or _status_value(message.delivery_status) not in _RESENDABLE
        ):
            raise ConflictError(
                "only pending or failed outbound messages can be resent",
                details={
                    "message_id": str(message_id),
                    "delivery_status": _status_value(message.delivery_status),
                },
            )
        lead = self._session.get(models.Lead, message.lead_id) if message.lead_id else None
        if lead is None:
            raise NotFoundError(
                f"lead for message {message_id} not found",
                details={"message_id": str(message_id)},
            )
        return await self._deliver(message, lead)

    async def handle_edit(
        self, channel: Channel, external_message_id: str, content: str
    ) -> RoutedMessage | None:
        """Apply an upstream edit to a stored message and relay the update."""

        channel = Channel(channel)
        message = self._find_message(channel, external_message_id)
        if message is None:
            logger.debug(
                "edit for unknown message ignored",
                extra={"channel": channel.value, "external_message_id": external_message_id},
            )
            return None

        message.content = content
        self._session.add(message)
        self._session.commit()

        result = RoutedMessage(
            state=RouteState.PERSISTED,
            tenant_id=message.tenant_id,
            lead_id=message.lead_id,
            message_id=message.id,
            transitions=[RouteState.PERSISTED],
        )
        result.rooms = await self._relay_message(message, event=self._relay.update_event)
        result.advance(RouteState.RELAYED)
        result.advance(RouteState.TERMINAL)
        return result

    def mark_read(self, tenant_id: str, lead_id: UUID) -> int:
        """Mark the lead's unread inbound messages as read and return how many changed."""

        lead = self._session.get(models.Lead, lead_id)
        if lead is None or lead.tenant_id != tenant_id:
            raise NotFoundError(
                f"lead {lead_id} not found", details={"tenant_id": tenant_id, "lead_id": str(lead_id)}
            )
        unread = self._session.exec(
            select(models.Message).where(
                models.Message.lead_id == lead_id,
                models.Message.direction == MessageDirection.INBOUND.value,
                col(models.Message.is_read).is_(False),
            )
        ).all()
        for message in unread:
            message.is_read = True
            self._session.add(message)
        self._session.commit()
        if unread:
            logger.info(
                "messages marked read",
                extra={"tenant_id": tenant_id, "lead_id": str(lead_id), "count": len(unread)},
            )
        return len(unread)

    def unread_count(self, tenant_id: str, lead_id: UUID | None = None) -> int:
        """Count unread inbound messages for the tenant, or for one of its leads."""

        statement = select(func.count()).select_from(models.Message).where(
            models.Message.tenant_id == tenant_id,
            models.Message.direction == MessageDirection.INBOUND.value,
            col(models.Message.is_read).is_(False),
        )
        if lead_id is not None:
            statement = statement.where(models.Message.lead_id == lead_id)
        return int(self._session.exec(statement).one())

    async def _deliver(self, message: models.Message, lead: models.Lead) -> RoutedMessage:
        channel = Channel(message.channel)
        result = RoutedMessage(
            state=RouteState.RESOLVED,
            tenant_id=message.tenant_id,
            lead_id=lead.id,
            message_id=message.id,
            transitions=[RouteState.RESOLVED],
        )
        target = self._target_for(lead, channel)

        failure: ExternalPlatformError | None = None
        try:
            external_id = await asyncio.wait_for(
                self._dispatch(channel, target, message.content),
                timeout=self._send_timeout,
            )
        except TimeoutError:
            failure = ExternalPlatformError(
                f"{channel.value} send_message timed out",
                platform=channel.value,
                operation="send_message",
                timed_out=True,
            )
        except ExternalPlatformError as exc:
            failure = exc

        if failure is None:
            message.delivery_status = DeliveryStatus.SENT
            message.external_message_id = external_id
            message.failure_reason = None
            lead.last_contact_at = datetime.now(tz=UTC)
            self._session.add(lead)
        else:
            message.delivery_status = DeliveryStatus.FAILED
            message.failure_reason = failure.message
        self._session.add(message)
        self._session.commit()
        result.advance(RouteState.PERSISTED)

        result.rooms = await self._relay_message(message)
        result.advance(RouteState.RELAYED)
        result.advance(RouteState.TERMINAL)

        if failure is not None:
            MESSAGES_ROUTED.labels(channel=channel.value, outcome="send_failed").inc()
            logger.warning(
                "outbound message failed",
                extra={
                    "tenant_id": message.tenant_id,
                    "message_id": str(message.id),
                    "reason": failure.message,
                },
            )
            raise failure

        MESSAGES_ROUTED.labels(channel=channel.value, outcome="sent").inc()
        return result

    async def _dispatch(self, channel: Channel, target: str, content: str) -> str:
        if channel is Channel.CHAT:
            if self._chat is None:
                raise ValidationError("chat capability is not configured")
            return await self._chat.send_message(target, content)
        if self._commerce is None:
            raise ValidationError("commerce capability is not configured")
        return await self._commerce.send_message(target, content)

    def _target_for(self, lead: models.Lead, channel: Channel) -> str:
        if channel is Channel.CHAT:
            if self._chat is None:
                raise ValidationError("chat capability is not configured")
            if not lead.chat_channel_id:
                raise ValidationError(
                    "lead has no chat channel to message",
                    details={"lead_id": str(lead.id)},
                )
            return lead.chat_channel_id
        if self._commerce is None:
            raise ValidationError("commerce capability is not configured")
        if not lead.commerce_customer_id:
            raise ValidationError(
                "lead has no commerce customer to message",
                details={"lead_id": str(lead.id)},
            )
        return lead.commerce_customer_id

    def _find_message(
        self, channel: Channel, external_message_id: str | None
    ) -> models.Message | None:
        if not external_message_id:
            return None
        statement = select(models.Message).where(
            models.Message.channel == channel.value,
            models.Message.external_message_id == external_message_id,
        )
        return self._session.exec(statement).first()

    async def _relay_duplicate(
        self, result: RoutedMessage, channel: Channel, existing: models.Message
    ) -> RoutedMessage:
        result.duplicate = True
        result.tenant_id = existing.tenant_id
        result.lead_id = existing.lead_id
        result.message_id = existing.id
        result.advance(RouteState.RESOLVED)
        result.rooms = await self._relay_message(existing)
        result.advance(RouteState.RELAYED)
        result.advance(RouteState.TERMINAL)
        MESSAGES_ROUTED.labels(channel=channel.value, outcome="duplicate").inc()
        return result

    async def _relay_message(
        self, message: models.Message, *, event: str | None = None
    ) -> list[str]:
        try:
            return await self._relay.relay(message, event=event)
        except Exception:
            logger.exception(
                "realtime relay failed after persist",
                extra={"message_id": str(message.id), "tenant_id": message.tenant_id},
            )
            raise

    def _reject(self, result: RoutedMessage, channel: Channel, reason: str) -> RoutedMessage:
        result.rejection_reason = reason
        result.advance(RouteState.REJECTED)
        MESSAGES_ROUTED.labels(channel=channel.value, outcome="rejected").inc()
        logger.info(
            "inbound message rejected",
            extra={"tenant_id": result.tenant_id, "channel": channel.value, "reason": reason},
        )
        return result
