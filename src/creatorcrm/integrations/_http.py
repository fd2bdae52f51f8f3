"""Shared request plumbing for the platform clients."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from creatorcrm.core.errors import ExternalPlatformError

logger = logging.getLogger(__name__)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    platform: str,
    operation: str,
    **kwargs: Any,
) -> Any:
    """Issue a request and map transport failures onto ``ExternalPlatformError``.

    Timeouts are not retried here; the caller decides what a failed call means.
    """

    try:
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
    except httpx.TimeoutException as exc:
        logger.warning(
            "external platform call timed out",
            extra={"platform": platform, "operation": operation},
        )
        raise ExternalPlatformError(
            f"{platform} {operation} timed out",
            platform=platform,
            operation=operation,
            timed_out=True,
        ) from exc
    except httpx.HTTPStatusError as exc:
        logger.error(
            "external platform rejected request",
            extra={
                "platform": platform,
                "operation": operation,
                "status": exc.response.status_code,
                "body": exc.response.text,
            },
        )
        raise ExternalPlatformError(
            f"{platform} {operation} failed with status {exc.response.status_code}",
            platform=platform,
            operation=operation,
            upstream_status=exc.response.status_code,
        ) from exc
    except httpx.HTTPError as exc:
        logger.exception(
            "external platform request failed",
            extra={"platform": platform, "operation": operation},
        )
        raise ExternalPlatformError(
            f"{platform} {operation} failed: {exc}",
            platform=platform,
            operation=operation,
        ) from exc

    if not response.content:
        return None
    return response.json()


def unwrap_list(payload: Any) -> list[Any]:
    """Return the list inside ``{"data": [...]}`` envelopes, or the list itself."""

    if isinstance(payload, dict):
        payload = payload.get("data") or []
    if not isinstance(payload, list):
        return []
    return payload
