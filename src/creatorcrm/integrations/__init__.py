"""Clients for the chat and commerce platforms the engine depends on."""

from .chat import ChatPlatformCapability, HttpChatPlatformClient
from .commerce import CommercePlatformCapability, HttpCommercePlatformClient

__all__ = [
    "ChatPlatformCapability",
    "HttpChatPlatformClient",
    "CommercePlatformCapability",
    "HttpCommercePlatformClient",
]
