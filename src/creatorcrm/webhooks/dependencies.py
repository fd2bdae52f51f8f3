"""Dependency wiring for the webhook application."""

from __future__ import annotations

from collections.abc import Iterator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlmodel import Session

from creatorcrm.bindings import ChannelBindingValidator
from creatorcrm.core.config import AppSettings
from creatorcrm.core.db.session import create_engine_from_settings
from creatorcrm.identity import ExternalIdentityResolver
from creatorcrm.integrations.chat import ChatClientSettings, HttpChatPlatformClient
from creatorcrm.integrations.commerce import CommerceClientSettings, HttpCommercePlatformClient
from creatorcrm.routing import MessageRouter, RealtimeRelay, RedisRealtimeTransport
from creatorcrm.sync import MemberSyncOrchestrator


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()


SettingsDep = Annotated[AppSettings, Depends(get_settings)]


def get_session(settings: SettingsDep) -> Iterator[Session]:
    engine = create_engine_from_settings(settings)
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_session)]

_transport: RedisRealtimeTransport | None = None
_chat_client: HttpChatPlatformClient | None = None
_commerce_client: HttpCommercePlatformClient | None = None


def get_relay(settings: SettingsDep) -> RealtimeRelay:
    global _transport
    if _transport is None:
        _transport = RedisRealtimeTransport.from_url(
            settings.redis.url, channel_prefix=settings.realtime.channel_prefix
        )
    return RealtimeRelay(_transport, settings=settings.realtime)


def get_chat_client(settings: SettingsDep) -> HttpChatPlatformClient | None:
    global _chat_client
    if _chat_client is None and settings.chat.bot_token:
        _chat_client = HttpChatPlatformClient(
            settings=ChatClientSettings.from_settings(settings.chat)
        )
    return _chat_client


def get_commerce_client(settings: SettingsDep) -> HttpCommercePlatformClient | None:
    global _commerce_client
    if _commerce_client is None and settings.commerce.api_key:
        _commerce_client = HttpCommercePlatformClient(
            settings=CommerceClientSettings.from_settings(settings.commerce)
        )
    return _commerce_client


async def start_clients() -> None:
    client = get_chat_client(get_settings())
    if client is not None:
        await client.start()


async def shutdown_clients() -> None:
    global _transport, _chat_client, _commerce_client
    if _chat_client is not None:
        await _chat_client.stop()
        _chat_client = None
    if _commerce_client is not None:
        await _commerce_client.close()
        _commerce_client = None
    if _transport is not None:
        await _transport.close()
        _transport = None


RelayDep = Annotated[RealtimeRelay, Depends(get_relay)]
ChatDep = Annotated[HttpChatPlatformClient | None, Depends(get_chat_client)]
CommerceDep = Annotated[HttpCommercePlatformClient | None, Depends(get_commerce_client)]


def get_resolver(session: SessionDep) -> ExternalIdentityResolver:
    return ExternalIdentityResolver(session)


ResolverDep = Annotated[ExternalIdentityResolver, Depends(get_resolver)]


def get_message_router(
    session: SessionDep,
    resolver: ResolverDep,
    relay: RelayDep,
    chat: ChatDep,
    commerce: CommerceDep,
    settings: SettingsDep,
) -> MessageRouter:
    return MessageRouter(
        session,
        resolver,
        relay,
        chat=chat,
        commerce=commerce,
        send_timeout=settings.engine.send_timeout_seconds,
    )


def get_member_sync(
    session: SessionDep,
    resolver: ResolverDep,
    chat: ChatDep,
    commerce: CommerceDep,
    settings: SettingsDep,
) -> MemberSyncOrchestrator:
    validator = None
    if chat is not None:
        validator = ChannelBindingValidator(
            session, chat, default_mode=settings.engine.binding_fix_mode
        )
    return MemberSyncOrchestrator(
        session,
        resolver,
        commerce,
        chat=chat,
        validator=validator,
        fallback_name=settings.engine.commerce_member_fallback_name,
    )


RouterDep = Annotated[MessageRouter, Depends(get_message_router)]
MemberSyncDep = Annotated[MemberSyncOrchestrator, Depends(get_member_sync)]
