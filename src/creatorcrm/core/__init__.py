"""Core utilities and domain building blocks for the lead resolution engine."""

from . import config, domain, errors, logging
from .config import (
    AppSettings,
    BindingFixMode,
    ChatPlatformSettings,
    CommercePlatformSettings,
    EngineSettings,
    PostgresSettings,
    RealtimeSettings,
    RedisSettings,
)
from .domain import (
    Channel,
    ExternalKeyType,
    InboundEvent,
    LeadStatus,
    MessageDirection,
    PollResult,
    ReconciliationReport,
    RoutedMessage,
    RouteState,
    SyncResult,
)
from .logging import configure_logging, get_logger

__all__ = [
    "config",
    "domain",
    "errors",
    "logging",
    "configure_logging",
    "get_logger",
    "AppSettings",
    "BindingFixMode",
    "PostgresSettings",
    "RedisSettings",
    "ChatPlatformSettings",
    "CommercePlatformSettings",
    "RealtimeSettings",
    "EngineSettings",
    "Channel",
    "ExternalKeyType",
    "InboundEvent",
    "LeadStatus",
    "MessageDirection",
    "PollResult",
    "ReconciliationReport",
    "RoutedMessage",
    "RouteState",
    "SyncResult",
]
