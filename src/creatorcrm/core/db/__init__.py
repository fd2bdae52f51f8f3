"""Database models and helpers for the lead resolution engine."""

from . import models, session
from .models import AppUser, ChannelBinding, Lead, Message, Tenant, metadata
from .session import (
    create_engine_for_dsn,
    create_engine_from_settings,
    init_db,
    session_scope,
)

__all__ = [
    "models",
    "session",
    "Tenant",
    "AppUser",
    "ChannelBinding",
    "Lead",
    "Message",
    "metadata",
    "create_engine_for_dsn",
    "create_engine_from_settings",
    "init_db",
    "session_scope",
]
