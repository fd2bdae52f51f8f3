"""Commerce platform webhook router."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response, status

from creatorcrm.core.domain import Channel, InboundEvent
from creatorcrm.core.errors import ExternalPlatformError, IdentityResolutionError

from ..dependencies import MemberSyncDep, RouterDep, SettingsDep
from ..extraction import (
    COMMERCE_MESSAGE_ID_RULES,
    COMPANY_ID_RULES,
    CONTENT_RULES,
    EVENT_TYPE_RULES,
    MEMBERSHIP_ID_RULES,
    USER_ID_RULES,
    extract_str,
)
from ._shared import ignored, read_event, routed_body

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["commerce"])

MEMBERSHIP_EVENTS = {
    "membership_activated",
    "membership.activated",
    "membership_went_valid",
    "membership.went_valid",
    "app_install",
}
MESSAGE_EVENTS = {"message", "message_created", "message.created", "dm_received"}


@router.post("/commerce", status_code=status.HTTP_202_ACCEPTED)
async def commerce_webhook(
    request: Request,
    response: Response,
    settings: SettingsDep,
    message_router: RouterDep,
    member_sync: MemberSyncDep,
) -> dict[str, Any]:
    payload = await read_event(request, settings.commerce.webhook_secret)

    user_id = extract_str(payload, USER_ID_RULES)
    if not user_id:
        logger.warning("commerce webhook without user id acknowledged", extra={"keys": sorted(payload)})
        return ignored("missing user_id")

    tenant_id = extract_str(payload, COMPANY_ID_RULES) or settings.commerce.default_company_id
    if not tenant_id:
        logger.warning("commerce webhook without company id acknowledged", extra={"user_id": user_id})
        return ignored("missing company_id")

    event_type = (extract_str(payload, EVENT_TYPE_RULES) or "").lower()
    try:
        if event_type in MEMBERSHIP_EVENTS:
            membership_id = extract_str(payload, MEMBERSHIP_ID_RULES)
            if not membership_id:
                return ignored("missing membership_id")
            if not member_sync.commerce_enabled:
                logger.error(
                    "membership webhook dropped: commerce platform not configured",
                    extra={"tenant_id": tenant_id, "membership_id": membership_id},
                )
                return ignored("commerce platform not configured")
            lead = await member_sync.import_membership(tenant_id, membership_id, user_id)
            response.status_code = status.HTTP_200_OK
            return {"status": "imported", "tenant_id": tenant_id, "lead_id": str(lead.id)}

        if event_type in MESSAGE_EVENTS:
            content = extract_str(payload, CONTENT_RULES)
            if content is None:
                return ignored("missing content")
            result = await message_router.route(
                InboundEvent(
                    channel=Channel.COMMERCE,
                    external_user_id=user_id,
                    content=content,
                    external_message_id=extract_str(payload, COMMERCE_MESSAGE_ID_RULES),
                    tenant_id=tenant_id,
                    metadata={"event": event_type},
                )
            )
            return routed_body(result, response)
    except IdentityResolutionError as exc:
        return ignored(exc.message)
    except ExternalPlatformError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc

    return ignored(f"unhandled event {event_type or 'unknown'}")
