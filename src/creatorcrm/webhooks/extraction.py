"""Ordered extraction rules for loosely shaped webhook payloads.

Platforms nest the same identifier under different keys depending on the event
and the delivery path (dashboard test hooks wrap events in an array). Each
field is described by a list of rules tried in order; the first non-empty
value wins.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class ExtractionRule:
    name: str
    path: tuple[str, ...]

    @classmethod
    def of(cls, dotted: str) -> ExtractionRule:
        return cls(name=dotted, path=tuple(dotted.split(".")))

    def apply(self, payload: Any) -> Any:
        node = payload
        for key in self.path:
            if not isinstance(node, Mapping):
                return None
            node = node.get(key)
            if node is None:
                return None
        return node


def rules(*dotted: str) -> tuple[ExtractionRule, ...]:
    return tuple(ExtractionRule.of(path) for path in dotted)


def unwrap_event(payload: Any) -> Mapping[str, Any]:
    """Return the event object, taking the first element of array deliveries."""

    if isinstance(payload, Sequence) and not isinstance(payload, (str, bytes)):
        payload = payload[0] if payload else None
    if not isinstance(payload, Mapping):
        return {}
    return payload


def extract(payload: Any, candidates: Iterable[ExtractionRule]) -> Any:
    for rule in candidates:
        value = rule.apply(payload)
        if value is None or value == "":
            continue
        return value
    return None


def extract_str(payload: Any, candidates: Iterable[ExtractionRule]) -> str | None:
    value = extract(payload, candidates)
    if value is None or isinstance(value, (Mapping, list)):
        return None
    return str(value)


def extract_name(payload: Any, candidates: Iterable[ExtractionRule]) -> str | None:
    """Return the first value that reads as an event name.

    Numeric values are skipped: chat message objects carry an integer ``type``
    (0 for a plain message) that is not an event name.
    """

    for rule in candidates:
        value = rule.apply(payload)
        if not isinstance(value, str):
            continue
        value = value.strip()
        if not value or value.lstrip("-").isdigit():
            continue
        return value
    return None


USER_ID_RULES = rules(
    "user_id",
    "user.id",
    "data.user_id",
    "data.user.id",
    "payload.user_id",
    "payload.user.id",
    "membership.user_id",
    "membership.user.id",
    "customer.id",
)

COMPANY_ID_RULES = rules(
    "company_id",
    "company.id",
    "data.company_id",
    "data.company.id",
    "payload.company_id",
    "payload.company.id",
    "membership.company_id",
    "membership.company.id",
)

MEMBERSHIP_ID_RULES = rules(
    "membership_id",
    "membership.id",
    "data.membership_id",
    "data.membership.id",
    "payload.membership_id",
    "data.id",
)

EVENT_TYPE_RULES = rules("event", "action", "type", "data.event")

CHAT_EVENT_TYPE_RULES = rules("event", "action", "type", "data.event", "data.type")

COMMERCE_MESSAGE_ID_RULES = rules(
    "message_id",
    "message.id",
    "data.message_id",
    "data.message.id",
)

CONTENT_RULES = rules(
    "content",
    "message.content",
    "data.content",
    "data.message.content",
    "payload.content",
)

CHAT_AUTHOR_ID_RULES = rules("author.id", "user.id", "user_id", "data.author.id", "data.user.id")

CHAT_AUTHOR_NAME_RULES = rules(
    "author.username", "user.username", "data.author.username", "data.user.username"
)

CHAT_AUTHOR_BOT_RULES = rules("author.bot", "user.bot", "data.author.bot", "data.user.bot")

CHAT_MESSAGE_ID_RULES = rules("message_id", "id", "data.id", "data.message_id")

CHANNEL_ID_RULES = rules("channel_id", "channel.id", "data.channel_id")

GUILD_ID_RULES = rules("guild_id", "guild.id", "data.guild_id")

TENANT_ID_RULES = rules("tenant_id", "data.tenant_id")
