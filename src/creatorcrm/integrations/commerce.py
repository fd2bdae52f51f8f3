"""Commerce/membership platform capability."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx

from creatorcrm.core.config import CommercePlatformSettings
from creatorcrm.core.domain import CommerceMessage, CommerceUser, MembershipRecord

from ._http import request_json, unwrap_list

logger = logging.getLogger(__name__)

PLATFORM = "commerce"

# Upper bound on pages walked per listing.
MAX_PAGES = 500


class CommercePlatformCapability(Protocol):
    """Operations the engine needs from the commerce platform."""

    async def list_memberships(self, tenant_id: str) -> list[MembershipRecord]:
        ...

    async def get_user(self, user_id: str) -> CommerceUser:
        ...

    async def send_message(self, user_id: str, content: str) -> str:
        ...

    async def list_messages(self, user_id: str, *, limit: int = 10) -> list[CommerceMessage]:
        ...


@dataclass(slots=True)
class CommerceClientSettings:
    """Configuration for the HTTP commerce client."""

    base_url: str
    api_key: str
    timeout: float = 15.0
    page_size: int = 100

    @classmethod
    def from_settings(cls, settings: CommercePlatformSettings) -> CommerceClientSettings:
        if not settings.api_key:
            raise ValueError("commerce api key is not configured")
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            timeout=settings.timeout_seconds,
        )


def _membership_user_id(entry: dict[str, Any]) -> str | None:
    user = entry.get("user")
    if isinstance(user, dict) and user.get("id"):
        return str(user["id"])
    if entry.get("user_id"):
        return str(entry["user_id"])
    return None


def _next_page(payload: Any, current: int) -> int | None:
    if not isinstance(payload, dict):
        return None
    pagination = payload.get("pagination")
    if not isinstance(pagination, dict):
        return None
    next_page = pagination.get("next_page")
    if next_page is None:
        return None
    try:
        next_page = int(next_page)
    except (TypeError, ValueError):
        return None
    if next_page <= current:
        return None
    return next_page


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=UTC)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


class HttpCommercePlatformClient:
    """Commerce capability backed by the platform's REST API."""

    def __init__(self, *, settings: CommerceClientSettings) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout,
            headers={"Authorization": f"Bearer {settings.api_key}"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def list_memberships(self, tenant_id: str) -> list[MembershipRecord]:
        """Return every membership of ``tenant_id``, walking ``pagination.next_page``."""

        records: list[MembershipRecord] = []
        page: int | None = 1
        pages_read = 0
        while page is not None:
            if pages_read >= MAX_PAGES:
                logger.warning(
                    "membership listing truncated",
                    extra={"tenant_id": tenant_id, "pages": pages_read},
                )
                break
            payload = await request_json(
                self._client,
                "GET",
                "/memberships",
                platform=PLATFORM,
                operation="list_memberships",
                params={"company_id": tenant_id, "page": page, "per": self._settings.page_size},
            )
            pages_read += 1
            for entry in unwrap_list(payload):
                membership_id = entry.get("id")
                if not membership_id:
                    logger.warning(
                        "membership without id ignored", extra={"tenant_id": tenant_id}
                    )
                    continue
                records.append(
                    MembershipRecord(
                        membership_id=str(membership_id),
                        user_id=_membership_user_id(entry),
                    )
                )
            page = _next_page(payload, page)
        return records

    async def get_user(self, user_id: str) -> CommerceUser:
        payload = await request_json(
            self._client,
            "GET",
            f"/users/{user_id}",
            platform=PLATFORM,
            operation="get_user",
        )
        payload = payload or {}
        return CommerceUser(
            user_id=user_id,
            email=payload.get("email"),
            name=payload.get("name"),
            username=payload.get("username"),
        )

    async def send_message(self, user_id: str, content: str) -> str:
        payload = await request_json(
            self._client,
            "POST",
            "/messages",
            platform=PLATFORM,
            operation="send_message",
            json={"user_id": user_id, "content": content},
        )
        return str(payload["id"])

    async def list_messages(self, user_id: str, *, limit: int = 10) -> list[CommerceMessage]:
        """Return the latest ``limit`` messages of the conversation with ``user_id``."""

        payload = await request_json(
            self._client,
            "GET",
            "/messages",
            platform=PLATFORM,
            operation="list_messages",
            params={"user_id": user_id, "limit": limit},
        )
        messages: list[CommerceMessage] = []
        for entry in unwrap_list(payload):
            message_id = entry.get("id")
            if not message_id:
                continue
            sender = entry.get("user") if isinstance(entry.get("user"), dict) else {}
            sender_id = entry.get("user_id") or sender.get("id") or entry.get("author_id")
            messages.append(
                CommerceMessage(
                    message_id=str(message_id),
                    sender_id=str(sender_id) if sender_id else None,
                    content=str(entry.get("content") or ""),
                    sender_username=sender.get("username"),
                    created_at=_parse_timestamp(entry.get("created_at")),
                )
            )
        return messages
