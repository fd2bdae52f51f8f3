"""Helpers shared by the platform webhook routers."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from fastapi import HTTPException, Request, Response, status

from creatorcrm.core.domain import RoutedMessage

from ..extraction import unwrap_event
from ..security import SignatureContext, SignatureVerificationError, validate_hmac_signature

SIGNATURE_HEADER = "X-Signature"


async def read_event(request: Request, secret: str | None) -> Mapping[str, Any]:
    """Verify the signature when a secret is configured and return the event object."""

    raw_body = await request.body()
    if secret:
        try:
            validate_hmac_signature(
                SignatureContext(
                    signature=request.headers.get(SIGNATURE_HEADER, ""),
                    secret=secret,
                    payload=raw_body,
                )
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    try:
        payload = json.loads(raw_body.decode("utf-8") or "null")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="invalid JSON payload"
        ) from exc
    return unwrap_event(payload)


def ignored(reason: str) -> dict[str, Any]:
    return {"status": "ignored", "reason": reason}


def routed_body(result: RoutedMessage, response: Response) -> dict[str, Any]:
    if result.rejected:
        response.status_code = status.HTTP_202_ACCEPTED
        return {"status": "rejected", "reason": result.rejection_reason}
    response.status_code = status.HTTP_200_OK
    return {
        "status": "duplicate" if result.duplicate else "routed",
        "tenant_id": result.tenant_id,
        "lead_id": str(result.lead_id) if result.lead_id else None,
        "message_id": str(result.message_id) if result.message_id else None,
        "lead_created": result.lead_created,
        "rooms": result.rooms,
    }
