"""Persistence and realtime fan-out of resolved messages."""

from .poller import CommerceMessagePoller
from .relay import RealtimeRelay, RealtimeTransport, RedisRealtimeTransport, message_payload
from .router import MessageRouter

__all__ = [
    "CommerceMessagePoller",
    "MessageRouter",
    "RealtimeRelay",
    "RealtimeTransport",
    "RedisRealtimeTransport",
    "message_payload",
]
