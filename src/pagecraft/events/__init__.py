"""Pagecraft event bus."""

from pagecraft.events.bus import EventBus, Handler, PagecraftEvent
from pagecraft.events.payloads import (
    ChatStatus,
    ChatStatusPayload,
    SessionCreatedPayload,
    SessionDeletedPayload,
    TurnPayload,
    VersionCommittedPayload,
)

__all__ = [
    "ChatStatus",
    "ChatStatusPayload",
    "EventBus",
    "Handler",
    "PagecraftEvent",
    "SessionCreatedPayload",
    "SessionDeletedPayload",
    "TurnPayload",
    "VersionCommittedPayload",
]
