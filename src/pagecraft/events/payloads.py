"""Typed payload definitions for each PagecraftEvent.

Each event carries a payload dict. This module defines a ``TypedDict`` for
every event so handlers can use static type checkers rather than guessing
key names at runtime::

    from pagecraft.events.payloads import ChatStatusPayload

    def on_status(event: PagecraftEvent, payload: ChatStatusPayload) -> None:
        if payload["status"] == "error":
            alert(payload["session_id"], payload.get("details"))

    bus.subscribe(PagecraftEvent.CHAT_STATUS, on_status)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import Any, Literal, NotRequired, TypedDict

ChatStatus = Literal["started", "generating", "completed", "error", "skipped"]

# ── User-facing ───────────────────────────────────────────────────────────────


class ChatStatusPayload(TypedDict):
    """Payload for :attr:`PagecraftEvent.CHAT_STATUS`."""

    session_id: str
    status: ChatStatus
    message: NotRequired[str]
    """Short human-readable line (a progress line, or a status summary)."""
    details: NotRequired[Any]
    """Turn summary on ``completed``; error description on ``error``."""


class SessionCreatedPayload(TypedDict):
    """Payload for :attr:`PagecraftEvent.SESSION_CREATED`."""

    source_session_id: str
    """Session the new one was cloned from, or ``"system"``."""
    new_session_id: str
    group: NotRequired[int]


# ── Observability ─────────────────────────────────────────────────────────────


class SessionDeletedPayload(TypedDict):
    """Payload for :attr:`PagecraftEvent.SESSION_DELETED`."""

    session_id: str


class TurnPayload(TypedDict):
    """Payload for :attr:`PagecraftEvent.TURN_STARTED` and :attr:`PagecraftEvent.TURN_UNDONE`."""

    session_id: str
    turn: int
    version: int


class VersionCommittedPayload(TypedDict):
    """Payload for :attr:`PagecraftEvent.VERSION_COMMITTED`."""

    session_id: str
    version: int
