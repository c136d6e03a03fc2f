"""
In-memory session cache backed by the on-disk session tree.

``SessionRegistry`` is the single owner of mutable ``Session`` objects.
Sessions are hydrated lazily from disk on first access and written back on
every mutating call. Each session id gets its own ``asyncio.Lock``; store
components mutate a session only while holding it::

    async with registry.locked(session_id) as session:
        session.current_version += 1
        await registry.persist_meta(session)

Callers outside the store only ever see deep copies (:meth:`snapshot`).

Thread-safety: only safe to use from a single asyncio event loop.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

import structlog

from pagecraft.models.chat import ChatEntry
from pagecraft.models.files import DEFAULT_FILES
from pagecraft.models.session import Session
from pagecraft.store.errors import SessionNotFoundError
from pagecraft.store.layout import SessionLayout

_logger = structlog.get_logger("pagecraft.store")


class SessionRegistry:
    """
    Process-scoped map of ``session_id → Session`` with per-session locks.

    Args:
        layout: On-disk layout the sessions are persisted to.
        default_image_generation: ``image_generation_allowed`` of new sessions.
        group_count: New sessions draw their display group from ``range(group_count)``.
    """

    def __init__(
        self,
        layout: SessionLayout,
        *,
        default_image_generation: bool = True,
        group_count: int = 32,
    ) -> None:
        self._layout = layout
        self._default_image_generation = default_image_generation
        self._group_count = group_count
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def layout(self) -> SessionLayout:
        return self._layout

    def random_group(self) -> int:
        return random.randrange(self._group_count)

    def lock(self, session_id: str) -> asyncio.Lock:
        """Return the lock serialising mutations of *session_id*."""
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    # ── Access ─────────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def locked(self, session_id: str) -> AsyncIterator[Session]:
        """
        Hold the session lock and yield the live ``Session``.

        Raises:
            SessionNotFoundError: If the session is neither cached nor on disk.
        """
        async with self.lock(session_id):
            session = await self._load(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            yield session

    async def exists(self, session_id: str) -> bool:
        if session_id in self._sessions:
            return True
        meta = await asyncio.to_thread(self._layout.read_meta, session_id)
        return meta is not None

    async def snapshot(self, session_id: str) -> Session:
        """
        Return a deep copy of the session.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        async with self.locked(session_id) as session:
            return self.copy(session)

    async def find(self, session_id: str) -> Session | None:
        """Return a deep copy of the session, or None if it does not exist."""
        async with self.lock(session_id):
            session = await self._load(session_id)
            return self.copy(session) if session is not None else None

    async def get_or_create(self, session_id: str) -> Session:
        """Return a copy of the session, creating a fresh one under *session_id* if unknown."""
        async with self.lock(session_id):
            session = await self._load(session_id)
            if session is None:
                session = await self._create_unlocked(session_id, group=None)
            return self.copy(session)

    async def create(self, session_id: str, *, group: int | None = None) -> Session:
        """Create and persist a fresh session at version 0, turn 0."""
        async with self.lock(session_id):
            session = await self._create_unlocked(session_id, group=group)
            return self.copy(session)

    async def adopt(self, session: Session) -> None:
        """Install a cloned *session* as cached state and persist its metadata and logs."""
        async with self.lock(session.id):
            self._sessions[session.id] = session
            await self.persist_meta(session)
            await self.persist_logs(session)

    async def remove(self, session_id: str) -> bool:
        """Drop the session and delete its subtree. Returns False if it never existed."""
        async with self.lock(session_id):
            cached = self._sessions.pop(session_id, None) is not None
            removed = await asyncio.to_thread(self._layout.remove_session, session_id)
        self._locks.pop(session_id, None)
        return cached or removed

    @staticmethod
    def copy(session: Session) -> Session:
        return session.model_copy(deep=True)

    # ── Persistence ────────────────────────────────────────────────────────────

    async def persist_meta(self, session: Session) -> None:
        session.touch()
        await asyncio.to_thread(self._layout.write_meta, session.id, session.meta_json())

    async def persist_logs(self, session: Session, versions: Iterable[int] | None = None) -> None:
        """
        Rewrite the per-version chat logs.

        Args:
            session: Live session whose ``history`` and ``context`` are written.
            versions: Versions to rewrite; ``None`` rewrites ``0..current_version``.
        """
        targets = (
            sorted(set(versions)) if versions is not None else range(session.current_version + 1)
        )
        await asyncio.to_thread(self._write_logs, session, list(targets))

    def _write_logs(self, session: Session, versions: list[int]) -> None:
        for version in versions:
            history = [e for e in session.history if e.version == version]
            context = [e for e in session.context if e.version == version]
            if not self._layout.version_exists(session.id, version):
                if not history and not context:
                    continue
                self._layout.materialize_version(session.id, version, DEFAULT_FILES)
            self._layout.write_entries(session.id, version, "messages", history)
            self._layout.write_entries(session.id, version, "context", context)

    # ── Internals ──────────────────────────────────────────────────────────────

    async def _create_unlocked(self, session_id: str, *, group: int | None) -> Session:
        session = Session(
            id=session_id,
            group=self.random_group() if group is None else group,
            image_generation_allowed=self._default_image_generation,
        )
        await asyncio.to_thread(self._layout.remove_session, session_id)
        await asyncio.to_thread(self._layout.write_files, session_id, 0, session.files)
        await self.persist_meta(session)
        await self.persist_logs(session)
        self._sessions[session_id] = session
        _logger.info("session_created", session_id=session_id, group=session.group)
        return session

    async def _load(self, session_id: str) -> Session | None:
        cached = self._sessions.get(session_id)
        if cached is not None:
            return cached
        session = await asyncio.to_thread(self._read_from_disk, session_id)
        if session is not None:
            self._sessions[session_id] = session
            _logger.debug("session_hydrated", session_id=session_id)
        return session

    def _read_from_disk(self, session_id: str) -> Session | None:
        meta = self._layout.read_meta(session_id)
        if meta is None:
            return None
        session = Session.model_validate({**meta, "id": meta.get("id", session_id)})

        history: list[ChatEntry] = []
        context: list[ChatEntry] = []
        for version in self._layout.version_numbers(session_id):
            if version > session.current_version:
                continue
            history.extend(self._layout.read_entries(session_id, version, "messages"))
            context.extend(self._layout.read_entries(session_id, version, "context"))
        session.history = sorted(history, key=lambda e: e.turn)
        session.context = sorted(context, key=lambda e: e.turn)

        if "turns" not in meta:
            session.turns = _rebuild_turns(history)
            session.last_turn = max(session.turns)

        files = self._layout.read_files(session_id, session.current_version)
        session.files = files if files is not None else DEFAULT_FILES
        return session


def _rebuild_turns(history: list[ChatEntry]) -> dict[int, int]:
    """Derive the turn ledger from user entries when ``session.json`` predates it."""
    turns: dict[int, int] = {0: 0}
    for entry in history:
        if entry.role == "user":
            turns[entry.turn] = entry.version
    return turns
