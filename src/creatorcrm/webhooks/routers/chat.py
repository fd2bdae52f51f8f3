"""Chat platform (bot gateway relay) webhook router."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response, status

from creatorcrm.core.domain import Channel, InboundEvent, LeadSource
from creatorcrm.core.errors import ExternalPlatformError, IdentityResolutionError

from ..dependencies import ResolverDep, RouterDep, SessionDep, SettingsDep
from ..extraction import (
    CHANNEL_ID_RULES,
    CHAT_AUTHOR_BOT_RULES,
    CHAT_AUTHOR_ID_RULES,
    CHAT_AUTHOR_NAME_RULES,
    CHAT_EVENT_TYPE_RULES,
    CHAT_MESSAGE_ID_RULES,
    CONTENT_RULES,
    GUILD_ID_RULES,
    TENANT_ID_RULES,
    extract,
    extract_name,
    extract_str,
)
from ._shared import ignored, read_event, routed_body

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["chat"])

MESSAGE_CREATE = {"message_create", "message"}
MESSAGE_UPDATE = {"message_update", "message_edit"}
MEMBER_JOIN = {"guild_member_add", "member_join"}


@router.post("/chat", status_code=status.HTTP_202_ACCEPTED)
async def chat_webhook(
    request: Request,
    response: Response,
    settings: SettingsDep,
    session: SessionDep,
    resolver: ResolverDep,
    message_router: RouterDep,
) -> dict[str, Any]:
    payload = await read_event(request, settings.chat.webhook_secret)
    event_type = (extract_name(payload, CHAT_EVENT_TYPE_RULES) or "message_create").lower()

    try:
        if event_type in MESSAGE_UPDATE:
            message_id = extract_str(payload, CHAT_MESSAGE_ID_RULES)
            content = extract_str(payload, CONTENT_RULES)
            if not message_id or content is None:
                return ignored("missing message id or content")
            result = await message_router.handle_edit(Channel.CHAT, message_id, content)
            if result is None:
                return ignored("unknown message")
            response.status_code = status.HTTP_200_OK
            return {"status": "updated", "message_id": str(result.message_id)}

        author_id = extract_str(payload, CHAT_AUTHOR_ID_RULES)
        author_name = extract_str(payload, CHAT_AUTHOR_NAME_RULES)
        is_bot = bool(extract(payload, CHAT_AUTHOR_BOT_RULES))
        guild_id = extract_str(payload, GUILD_ID_RULES)
        tenant_id = extract_str(payload, TENANT_ID_RULES)

        if event_type in MEMBER_JOIN:
            tenant_id = tenant_id or resolver.tenant_for_guild(guild_id)
            if not tenant_id or not author_id:
                return ignored("tenant or member unresolved")
            if is_bot or resolver.is_app_user(tenant_id, author_id):
                return ignored("member is not a lead")
            resolution = resolver.resolve_detailed(
                tenant_id, Channel.CHAT, author_id, author_name, source=LeadSource.CHAT
            )
            session.commit()
            response.status_code = status.HTTP_200_OK
            return {
                "status": "lead_created" if resolution.created else "lead_exists",
                "lead_id": str(resolution.lead.id),
            }

        if event_type in MESSAGE_CREATE:
            content = extract_str(payload, CONTENT_RULES)
            if content is None:
                return ignored("missing content")
            result = await message_router.route(
                InboundEvent(
                    channel=Channel.CHAT,
                    external_user_id=author_id,
                    content=content,
                    external_message_id=extract_str(payload, CHAT_MESSAGE_ID_RULES),
                    tenant_id=tenant_id,
                    guild_id=guild_id,
                    external_channel_id=extract_str(payload, CHANNEL_ID_RULES),
                    author_username=author_name,
                    author_is_bot=is_bot,
                )
            )
            return routed_body(result, response)
    except IdentityResolutionError as exc:
        return ignored(exc.message)
    except ExternalPlatformError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc

    return ignored(f"unhandled event {event_type}")
