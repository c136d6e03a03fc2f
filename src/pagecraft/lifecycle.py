"""Session lifecycle: creation, cloning, deletion and background hydration."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog
from ulid import ULID

from pagecraft.events.bus import EventBus, PagecraftEvent
from pagecraft.models.results import PendingSession
from pagecraft.models.session import Session
from pagecraft.store.errors import CloneSourceInvalidError
from pagecraft.store.ledger import TurnLedger
from pagecraft.store.registry import SessionRegistry
from pagecraft.store.versions import VersionStore

SYSTEM_SOURCE = "system"
"""``source_session_id`` announced for sessions that were not cloned from another."""


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"page"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


class SessionLifecycle:
    """
    Creates, clones and deletes sessions.

    Cloning never mutates its source: it copies the version directories up
    to the cut point, keeps the turn ledger and chat logs up to the cut turn,
    and installs the result under a new id.

    Concurrent :meth:`create` calls sharing a nonce are coalesced into one
    session. The in-flight handle is dropped when the creation settles, so
    later calls create fresh sessions.

    ``begin_*`` methods return the new id immediately and hydrate on a
    background task. Failures there are logged and published as a
    ``chat.status`` error keyed by the new id; they never raise.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        versions: VersionStore,
        ledger: TurnLedger,
        event_bus: EventBus,
    ) -> None:
        self._registry = registry
        self._versions = versions
        self._ledger = ledger
        self._bus = event_bus
        self._pending_creates: dict[str, asyncio.Task[Session]] = {}
        self._create_lock = asyncio.Lock()
        self._background: set[asyncio.Task[Any]] = set()
        self._logger = structlog.get_logger("pagecraft.lifecycle")

    # ── Creation ───────────────────────────────────────────────────────────────

    async def create(self, nonce: str = "default") -> Session:
        """
        Create a fresh session, coalescing concurrent calls that share *nonce*.

        Returns:
            A copy of the new session (version 0, turn 0, default page).
        """
        async with self._create_lock:
            task = self._pending_creates.get(nonce)
            if task is None or task.done():
                task = asyncio.create_task(self._create_new())
                self._pending_creates[nonce] = task
                task.add_done_callback(lambda t: self._settle_create(nonce, t))
        return await asyncio.shield(task)

    def _settle_create(self, nonce: str, task: asyncio.Task[Session]) -> None:
        if self._pending_creates.get(nonce) is task:
            del self._pending_creates[nonce]

    async def get_or_create(self, session_id: str) -> Session:
        """Return the session, creating a fresh one under *session_id* if it is unknown."""
        return await self._registry.get_or_create(session_id)

    async def get(self, session_id: str) -> Session:
        """Return a copy of the session. Raises ``SessionNotFoundError`` if unknown."""
        return await self._registry.snapshot(session_id)

    async def exists(self, session_id: str) -> bool:
        return await self._registry.exists(session_id)

    def random_group(self) -> int:
        return self._registry.random_group()

    def begin_create(self) -> PendingSession:
        """Allocate an id and group now; create the session on a background task."""
        pending = PendingSession(id=make_id("page"), group=self._registry.random_group())

        async def hydrate() -> None:
            await self._registry.create(pending.id, group=pending.group)
            self.announce_created(SYSTEM_SOURCE, pending.id, pending.group)

        self.spawn(hydrate(), session_id=pending.id, operation="create")
        return pending

    # ── Cloning ────────────────────────────────────────────────────────────────

    async def clone(self, source_id: str) -> Session:
        """Duplicate the whole session at HEAD under a new id."""
        source = await self._registry.snapshot(source_id)
        return await self.clone_at_turn(source_id, source.last_turn, group=source.group)

    async def clone_at_turn(
        self,
        source_id: str,
        turn: int,
        *,
        new_id: str | None = None,
        group: int | None = None,
    ) -> Session:
        """
        Create a new session seeded with the source's state as of *turn*.

        The clone keeps turns ``0..turn`` and their log entries, and the
        version directories ``0..version(turn)``.

        Raises:
            CloneSourceInvalidError: If *turn* is not in the source's ledger.
        """
        source = await self._registry.snapshot(source_id)
        version = source.version_for_turn(turn)
        if version is None:
            raise CloneSourceInvalidError(f"Turn {turn} not found in session {source_id!r}")
        target_id = new_id or make_id("page")

        files = await self._versions.read_snapshot(source_id, version)
        await self._versions.clone_subtree(source_id, target_id, version)

        clone = Session(
            id=target_id,
            group=self._registry.random_group() if group is None else group,
            current_version=version,
            last_turn=turn,
            image_generation_allowed=source.image_generation_allowed,
            turns={t: v for t, v in source.turns.items() if t <= turn},
            files=files,
            history=[e for e in source.history if e.turn <= turn],
            context=[e for e in source.context if e.turn <= turn],
        )
        await self._registry.adopt(clone)
        self._logger.info(
            "session_cloned",
            source_session_id=source_id,
            session_id=target_id,
            turn=turn,
            version=version,
        )
        return self._registry.copy(clone)

    async def clone_at_version(self, source_id: str, version: int) -> Session:
        """
        Clone at the first turn that resolved to *version*.

        Raises:
            CloneSourceInvalidError: If no turn of the source maps to *version*.
        """
        source = await self._registry.snapshot(source_id)
        turn = source.first_turn_for_version(version)
        if turn is None or version > source.current_version:
            raise CloneSourceInvalidError(f"Version {version} not found in session {source_id!r}")
        return await self.clone_at_turn(source_id, turn, group=source.group)

    async def begin_clone_at_turn(self, source_id: str, turn: int) -> PendingSession:
        """
        Validate the cut point, return the new id, and hydrate the clone in the background.

        The clone inherits the source's display group.

        Raises:
            CloneSourceInvalidError: If *turn* is not in the source's ledger.
        """
        source = await self._registry.snapshot(source_id)
        version = source.version_for_turn(turn)
        if version is None:
            raise CloneSourceInvalidError(f"Turn {turn} not found in session {source_id!r}")
        pending = PendingSession(
            id=make_id("page"),
            group=source.group,
            current_version=version,
            current_turn=turn,
        )

        async def hydrate() -> None:
            await self.clone_at_turn(source_id, turn, new_id=pending.id, group=pending.group)
            self.announce_created(source_id, pending.id, pending.group)

        self.spawn(hydrate(), session_id=pending.id, operation="clone_at_turn")
        return pending

    # ── Mutation / deletion ────────────────────────────────────────────────────

    async def set_image_generation_allowed(self, session_id: str, allowed: bool) -> Session:
        async with self._registry.locked(session_id) as session:
            session.image_generation_allowed = allowed
            await self._registry.persist_meta(session)
            return self._registry.copy(session)

    async def delete(self, session_id: str) -> bool:
        """Delete the session and its whole on-disk subtree. Returns False if it did not exist."""
        removed = await self._registry.remove(session_id)
        if removed:
            self._logger.info("session_deleted", session_id=session_id)
            self._bus.publish(PagecraftEvent.SESSION_DELETED, {"session_id": session_id})
        return removed

    # ── Background tasks ───────────────────────────────────────────────────────

    def spawn(
        self,
        coro: Coroutine[Any, Any, None],
        *,
        session_id: str,
        operation: str,
    ) -> asyncio.Task[None]:
        """
        Run *coro* as a fire-and-forget task tracked until it settles.

        Exceptions are logged and published as a ``chat.status`` error for
        *session_id*.
        """

        async def guarded() -> None:
            try:
                await coro
            except Exception as exc:
                self._logger.error(
                    "background_task_failed",
                    session_id=session_id,
                    operation=operation,
                    error=str(exc),
                )
                self._bus.publish(
                    PagecraftEvent.CHAT_STATUS,
                    {"session_id": session_id, "status": "error", "details": str(exc)},
                )

        task = asyncio.create_task(guarded())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_for_background(self) -> None:
        """Await every background task, including ones spawned while waiting."""
        while self._background:
            await asyncio.gather(*list(self._background))

    # ── Internals ──────────────────────────────────────────────────────────────

    async def _create_new(self) -> Session:
        session = await self._registry.create(make_id("page"))
        self.announce_created(SYSTEM_SOURCE, session.id, session.group)
        return session

    def announce_created(self, source_id: str, new_id: str, group: int) -> None:
        """Publish ``session.created`` for a new session."""
        self._bus.publish(
            PagecraftEvent.SESSION_CREATED,
            {"source_session_id": source_id, "new_session_id": new_id, "group": group},
        )
