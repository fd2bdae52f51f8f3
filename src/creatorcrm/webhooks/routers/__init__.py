"""Webhook routers, one per platform."""

from . import chat, commerce

__all__ = ["chat", "commerce"]
