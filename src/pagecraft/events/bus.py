"""In-process pub/sub event bus for Pagecraft notifications."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["PagecraftEvent", dict[str, Any]], None | Awaitable[None]]


class PagecraftEvent(StrEnum):
    """All event types published by Pagecraft components.

    Typed payload definitions for each event live in
    :mod:`pagecraft.events.payloads`.

    **Payload schemas by event:**

    ``CHAT_STATUS``
        :class:`~pagecraft.events.payloads.ChatStatusPayload`:
        ``session_id: str``, ``status: str`` (``started``, ``generating``,
        ``completed``, ``error`` or ``skipped``), optional ``message`` and
        ``details``.

    ``SESSION_CREATED``
        :class:`~pagecraft.events.payloads.SessionCreatedPayload`:
        ``source_session_id: str`` (``"system"`` for plain creations),
        ``new_session_id: str``, optional ``group: int``.

    ``SESSION_DELETED``
        :class:`~pagecraft.events.payloads.SessionDeletedPayload`:
        ``session_id: str``

    ``TURN_STARTED``, ``TURN_UNDONE``
        :class:`~pagecraft.events.payloads.TurnPayload`:
        ``session_id: str``, ``turn: int``, ``version: int``

    ``VERSION_COMMITTED``
        :class:`~pagecraft.events.payloads.VersionCommittedPayload`:
        ``session_id: str``, ``version: int``

    Only ``CHAT_STATUS`` and ``SESSION_CREATED`` are meant for end users; the
    rest exist for observability.
    """

    CHAT_STATUS = "chat.status"
    SESSION_CREATED = "session.created"
    SESSION_DELETED = "session.deleted"
    TURN_STARTED = "turn.started"
    TURN_UNDONE = "turn.undone"
    VERSION_COMMITTED = "version.committed"


class EventBus:
    """
    In-process fan-out of :class:`PagecraftEvent` notifications.

    Handlers receive ``(event, payload)``. A plain function runs inside
    :meth:`publish`; a coroutine function is started as a task on the
    running loop and tracked until it finishes (:meth:`drain` awaits them).
    A failing handler is logged and skipped, so publishers never see it.

    One bus is shared by every component of a ``PageStudio``. A transport
    layer (SSE, websockets) subscribes here; the core never imports one.

    Example::

        bus = EventBus()
        bus.subscribe(
            PagecraftEvent.CHAT_STATUS,
            lambda event, payload: print(payload["session_id"], payload["status"]),
        )
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._by_event: dict[PagecraftEvent, list[Handler]] = {}
        self._wildcard: list[Handler] = []
        self._inflight: set[asyncio.Task[Any]] = set()
        self._logger = logger or structlog.get_logger("pagecraft.events")

    def subscribe(self, event: PagecraftEvent, handler: Handler) -> None:
        """Call *handler* for every *event* published from now on."""
        self._by_event.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Call *handler* for every event, whatever its type."""
        self._wildcard.append(handler)

    def unsubscribe(self, event: PagecraftEvent, handler: Handler) -> None:
        """Stop calling *handler* for *event*. Unknown handlers are ignored."""
        registered = self._by_event.get(event)
        if registered and handler in registered:
            registered.remove(handler)

    def publish(self, event: PagecraftEvent, payload: dict[str, Any]) -> None:
        """
        Deliver *payload* to the handlers of *event*, then to wildcard handlers.

        Coroutine handlers are skipped (and closed) when no loop is running.
        """
        for handler in [*self._by_event.get(event, ()), *self._wildcard]:
            try:
                outcome = handler(event, payload)
                if asyncio.iscoroutine(outcome):
                    self._schedule(outcome)
            except Exception as exc:
                self._logger.error(
                    "event_handler_failed",
                    event_name=str(event),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )

    async def drain(self) -> None:
        """Wait for every scheduled coroutine handler to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            return
        self._inflight.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error("event_handler_failed", error=str(task.exception()))
