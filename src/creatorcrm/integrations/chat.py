"""Chat platform (guild/server based) bot capability."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from creatorcrm.core.config import ChatPlatformSettings
from creatorcrm.core.domain import GuildMember
from creatorcrm.core.errors import ExternalPlatformError

from ._http import request_json, unwrap_list

logger = logging.getLogger(__name__)

PLATFORM = "chat"


class ChatPlatformCapability(Protocol):
    """Operations the engine needs from the chat platform bot."""

    async def send_message(self, channel_id: str, content: str) -> str:
        ...

    async def list_accessible_guilds(self) -> set[str]:
        ...

    async def list_guild_members(self, guild_id: str) -> list[GuildMember]:
        ...


@dataclass(slots=True)
class ChatClientSettings:
    """Configuration for the HTTP chat client."""

    base_url: str
    bot_token: str
    timeout: float = 10.0
    member_page_size: int = 1000

    @classmethod
    def from_settings(cls, settings: ChatPlatformSettings) -> ChatClientSettings:
        if not settings.bot_token:
            raise ValueError("chat bot token is not configured")
        return cls(
            base_url=settings.base_url,
            bot_token=settings.bot_token,
            timeout=settings.timeout_seconds,
        )


class HttpChatPlatformClient:
    """Bot capability backed by the platform's REST API.

    One instance is owned per process and handed to the services that need it;
    ``start``/``stop`` bracket the underlying connection pool.
    """

    def __init__(self, *, settings: ChatClientSettings) -> None:
        self._settings = settings
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        if self._client is not None:
            logger.debug("chat client already started")
            return
        self._client = httpx.AsyncClient(
            base_url=self._settings.base_url,
            timeout=self._settings.timeout,
            headers={"Authorization": f"Bot {self._settings.bot_token}"},
        )
        logger.info("chat client started")

    async def stop(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        logger.info("chat client stopped")

    def is_active(self) -> bool:
        return self._client is not None

    def _require_client(self, operation: str) -> httpx.AsyncClient:
        if self._client is None:
            raise ExternalPlatformError(
                "chat client is not running", platform=PLATFORM, operation=operation
            )
        return self._client

    async def send_message(self, channel_id: str, content: str) -> str:
        client = self._require_client("send_message")
        payload = await request_json(
            client,
            "POST",
            f"/channels/{channel_id}/messages",
            platform=PLATFORM,
            operation="send_message",
            json={"content": content},
        )
        return str(payload["id"])

    async def list_accessible_guilds(self) -> set[str]:
        client = self._require_client("list_accessible_guilds")
        payload = await request_json(
            client,
            "GET",
            "/users/@me/guilds",
            platform=PLATFORM,
            operation="list_accessible_guilds",
        )
        return {str(guild["id"]) for guild in unwrap_list(payload) if guild.get("id")}

    async def list_guild_members(self, guild_id: str) -> list[GuildMember]:
        """Return every member of ``guild_id``, paging with ``after=<last user id>``.

        Listing stops on the first page shorter than ``member_page_size``.
        """

        client = self._require_client("list_guild_members")
        page_size = self._settings.member_page_size
        members: list[GuildMember] = []
        after: str | None = None
        while True:
            params: dict[str, str | int] = {"limit": page_size}
            if after is not None:
                params["after"] = after
            payload = await request_json(
                client,
                "GET",
                f"/guilds/{guild_id}/members",
                platform=PLATFORM,
                operation="list_guild_members",
                params=params,
            )
            entries = unwrap_list(payload)
            last_id: str | None = None
            for entry in entries:
                user = entry.get("user") or {}
                user_id = user.get("id")
                if not user_id:
                    continue
                last_id = str(user_id)
                members.append(
                    GuildMember(
                        user_id=last_id,
                        username=user.get("username"),
                        is_bot=bool(user.get("bot", False)),
                    )
                )
            if len(entries) < page_size or last_id is None or last_id == after:
                break
            after = last_id
        return members
