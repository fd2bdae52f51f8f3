"""Operator commands for repairs and member imports."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

from sqlmodel import Session

from creatorcrm.bindings import ChannelBindingValidator
from creatorcrm.core.config import AppSettings, BindingFixMode
from creatorcrm.core.db.session import session_scope
from creatorcrm.core.errors import CoreError
from creatorcrm.core.logging import bind_tenant, configure_logging, get_logger
from creatorcrm.identity import ExternalIdentityResolver
from creatorcrm.integrations.chat import ChatClientSettings, HttpChatPlatformClient
from creatorcrm.integrations.commerce import CommerceClientSettings, HttpCommercePlatformClient
from creatorcrm.reconciliation import ReconciliationEngine
from creatorcrm.routing import (
    CommerceMessagePoller,
    MessageRouter,
    RealtimeRelay,
    RedisRealtimeTransport,
)
from creatorcrm.sync import MemberSyncOrchestrator

logger = get_logger(__name__)

Command = Callable[[argparse.Namespace, AppSettings, Session], Awaitable[Any]]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="creatorcrm",
        description="Repair and synchronise creator CRM lead data.",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    reconcile = subcommands.add_parser(
        "reconcile", help="Merge duplicate leads and realign message ownership."
    )
    target = reconcile.add_mutually_exclusive_group(required=True)
    target.add_argument("--tenant", help="Tenant (company) id to reconcile.")
    target.add_argument("--all", action="store_true", help="Reconcile every tenant.")

    bindings = subcommands.add_parser(
        "bindings", help="Report chat bindings whose guild the bot can no longer reach."
    )
    bindings.add_argument(
        "--auto-fix",
        choices=[mode.value for mode in BindingFixMode],
        default=None,
        help="Repair stale bindings with the given strategy (default: report only).",
    )

    members = subcommands.add_parser(
        "sync-members", help="Import commerce memberships as won leads."
    )
    members.add_argument("--tenant", required=True, help="Tenant (company) id to sync.")

    guild = subcommands.add_parser(
        "sync-guild", help="Import members of the tenant's bound chat guild as leads."
    )
    guild.add_argument("--tenant", required=True, help="Tenant (company) id to sync.")

    poll = subcommands.add_parser(
        "poll-messages", help="Route new customer messages from commerce conversations."
    )
    poll.add_argument("--tenant", required=True, help="Tenant (company) id to poll.")
    poll.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Leads polled per run (default: engine.poll_batch_size).",
    )

    serve = subcommands.add_parser("serve", help="Run the webhook application.")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: %(default)s).")
    serve.add_argument("--port", type=int, default=8080, help="Bind port (default: %(default)s).")

    return parser


async def _reconcile(args: argparse.Namespace, _: AppSettings, session: Session) -> Any:
    engine = ReconciliationEngine(session)
    if args.all:
        reports = await engine.reconcile_all()
        return [report.as_dict() for report in reports]
    bind_tenant(args.tenant)
    report = await engine.reconcile_tenant(args.tenant)
    return report.as_dict()


async def _bindings(args: argparse.Namespace, settings: AppSettings, session: Session) -> Any:
    chat = HttpChatPlatformClient(settings=ChatClientSettings.from_settings(settings.chat))
    await chat.start()
    try:
        validator = ChannelBindingValidator(
            session, chat, default_mode=settings.engine.binding_fix_mode
        )
        fix_mode = BindingFixMode(args.auto_fix) if args.auto_fix else None
        report = await validator.audit_bindings(fix_mode=fix_mode)
    finally:
        await chat.stop()
    return report.as_dict()


async def _sync_members(args: argparse.Namespace, settings: AppSettings, session: Session) -> Any:
    bind_tenant(args.tenant)
    commerce = HttpCommercePlatformClient(
        settings=CommerceClientSettings.from_settings(settings.commerce)
    )
    try:
        orchestrator = MemberSyncOrchestrator(
            session,
            ExternalIdentityResolver(session),
            commerce,
            fallback_name=settings.engine.commerce_member_fallback_name,
        )
        result = await orchestrator.sync_members(args.tenant)
    finally:
        await commerce.close()
    return result.as_dict()


async def _sync_guild(args: argparse.Namespace, settings: AppSettings, session: Session) -> Any:
    bind_tenant(args.tenant)
    chat = HttpChatPlatformClient(settings=ChatClientSettings.from_settings(settings.chat))
    await chat.start()
    try:
        orchestrator = MemberSyncOrchestrator(
            session,
            ExternalIdentityResolver(session),
            chat=chat,
            validator=ChannelBindingValidator(session, chat),
        )
        result = await orchestrator.sync_guild_members(args.tenant)
    finally:
        await chat.stop()
    return result.as_dict()


async def _poll_messages(args: argparse.Namespace, settings: AppSettings, session: Session) -> Any:
    bind_tenant(args.tenant)
    commerce = HttpCommercePlatformClient(
        settings=CommerceClientSettings.from_settings(settings.commerce)
    )
    transport = RedisRealtimeTransport.from_url(
        settings.redis.url, channel_prefix=settings.realtime.channel_prefix
    )
    relay = RealtimeRelay(transport, settings=settings.realtime)
    try:
        router = MessageRouter(
            session,
            ExternalIdentityResolver(session),
            relay,
            commerce=commerce,
            send_timeout=settings.engine.send_timeout_seconds,
        )
        poller = CommerceMessagePoller(
            session,
            router,
            commerce,
            batch_size=args.batch_size or settings.engine.poll_batch_size,
            history_limit=settings.engine.poll_history_limit,
        )
        result = await poller.poll_messages(args.tenant)
    finally:
        await commerce.close()
        await transport.close()
    return result.as_dict()


COMMANDS: dict[str, Command] = {
    "reconcile": _reconcile,
    "bindings": _bindings,
    "sync-members": _sync_members,
    "sync-guild": _sync_guild,
    "poll-messages": _poll_messages,
}


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("creatorcrm.webhooks:create_app", host=args.host, port=args.port, factory=True)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging()

    if args.command == "serve":
        return _serve(args)

    settings = AppSettings.load()
    command = COMMANDS[args.command]
    try:
        with session_scope(settings) as session:
            output = asyncio.run(command(args, settings, session))
    except CoreError as exc:
        logger.error("command.failed", command=args.command, code=exc.code, error=exc.message)
        print(json.dumps(exc.to_dict(), indent=2))
        return 1
    except ValueError as exc:
        logger.error("command.misconfigured", command=args.command, error=str(exc))
        return 2

    logger.info("command.completed", command=args.command)
    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
