"""Versioned file snapshots: the HEAD pointer and per-version directories."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog

from pagecraft.events.bus import EventBus, PagecraftEvent
from pagecraft.models.files import FileSnapshot, normalize_file_key
from pagecraft.models.session import Session
from pagecraft.store.errors import (
    InvalidFileKeyError,
    NotInitializedError,
    VersionExceedsHeadError,
    VersionNotFoundError,
)
from pagecraft.store.registry import SessionRegistry


class VersionStore:
    """
    Owns ``session_id → version → FileSnapshot``.

    HEAD (``Session.current_version``) advances only through
    :meth:`commit_files`. A turn that mutates files first calls
    :meth:`init_next_version`, which seeds ``HEAD + 1`` as a copy of HEAD
    (files and images); tools then work against that directory and the
    loop commits the final working copy to it.

    Historical versions are immutable once superseded, with one deliberate
    exception: :meth:`edit_historical_file` writes into any version
    ``<= HEAD`` so users can fix a past page in place. Clones read from
    disk, so they pick up those edited bytes.

    Example::

        target = await versions.init_next_version(session_id)
        ...  # tools mutate a working copy
        session = await versions.commit_files(session_id, new_files, target)
        assert session.current_version == target
    """

    def __init__(self, registry: SessionRegistry, event_bus: EventBus | None = None) -> None:
        self._registry = registry
        self._layout = registry.layout
        self._bus = event_bus
        self._logger = structlog.get_logger("pagecraft.store")

    async def init_next_version(self, session_id: str) -> int:
        """
        Materialize ``current_version + 1`` as a copy of HEAD, once per turn.

        Calling it again before :meth:`commit_files` returns the same number
        and leaves the directory untouched. A directory left behind by an
        undone turn is replaced with a fresh copy of HEAD.

        Returns:
            The version number to commit to.
        """
        async with self._registry.locked(session_id) as session:
            target = session.current_version + 1
            if session.pending_version == target and await asyncio.to_thread(
                self._layout.version_exists, session_id, target
            ):
                return target

            await asyncio.to_thread(
                self._layout.seed_version,
                session_id,
                session.current_version,
                target,
                session.files,
            )
            session.pending_version = target
            await self._registry.persist_meta(session)
            self._logger.info(
                "version_initialized",
                session_id=session_id,
                version=target,
                source_version=session.current_version,
            )
            return target

    async def commit_files(
        self, session_id: str, files: FileSnapshot, target_version: int
    ) -> Session:
        """
        Write *files* into ``target_version`` and advance HEAD if it is newer.

        Raises:
            NotInitializedError: If ``target_version`` was never seeded.
        """
        async with self._registry.locked(session_id) as session:
            exists = await asyncio.to_thread(
                self._layout.version_exists, session_id, target_version
            )
            if not exists:
                raise NotInitializedError(session_id, target_version)

            await asyncio.to_thread(self._layout.write_files, session_id, target_version, files)
            advanced = target_version > session.current_version
            if advanced:
                session.current_version = target_version
                session.files = files
            elif target_version == session.current_version:
                session.files = files
            if session.pending_version is not None and session.pending_version <= target_version:
                session.pending_version = None
            await self._registry.persist_meta(session)
            self._logger.info(
                "files_committed",
                session_id=session_id,
                version=target_version,
                head_advanced=advanced,
            )
            result = self._registry.copy(session)

        if advanced and self._bus is not None:
            self._bus.publish(
                PagecraftEvent.VERSION_COMMITTED,
                {"session_id": session_id, "version": target_version},
            )
        return result

    async def read_current(self, session_id: str) -> FileSnapshot:
        """Return the HEAD snapshot (the in-memory copy)."""
        async with self._registry.locked(session_id) as session:
            return session.files

    async def read_snapshot(self, session_id: str, version: int) -> FileSnapshot:
        """
        Return the files of *version*.

        Reads the version directory when present. HEAD falls back to the
        in-memory snapshot; a version referenced by the turn ledger whose
        directory is missing is re-materialized from the nearest earlier one.

        Raises:
            VersionExceedsHeadError: If ``version > current_version``.
            VersionNotFoundError: If the version has no snapshot and cannot be materialized.
        """
        async with self._registry.locked(session_id) as session:
            return await self._read_unlocked(session, version)

    async def edit_historical_file(
        self, session_id: str, version: int, file_key: str, content: str
    ) -> FileSnapshot:
        """
        Overwrite one file of any version up to HEAD, in place.

        At HEAD the live snapshot is updated too. ``current_version`` is
        never changed.

        Raises:
            InvalidFileKeyError: If *file_key* is not one of the three page files.
            VersionExceedsHeadError: If ``version > current_version``.
            VersionNotFoundError: If the version was never part of this session.
        """
        try:
            key = normalize_file_key(file_key)
        except ValueError as exc:
            raise InvalidFileKeyError(file_key) from exc

        async with self._registry.locked(session_id) as session:
            files = await self._read_unlocked(session, version)
            updated = files.replace(key, content)
            await asyncio.to_thread(
                self._layout.materialize_version, session_id, version, session.files
            )
            await asyncio.to_thread(self._layout.write_file, session_id, version, key, content)
            if version == session.current_version:
                session.files = updated
                # a seeded next version no longer mirrors HEAD
                session.pending_version = None
            await self._registry.persist_meta(session)
            self._logger.info(
                "historical_file_edited",
                session_id=session_id,
                version=version,
                file=key,
                is_head=version == session.current_version,
            )
            return updated

    async def clone_subtree(
        self, source_id: str, target_id: str, up_to_version: int | None = None
    ) -> list[int]:
        """
        Duplicate the source's version directories ``0..up_to_version`` into *target_id*.

        The source is only read. Returns the copied version numbers.
        """
        async with self._registry.lock(source_id):
            copied = await asyncio.to_thread(
                self._layout.copy_versions, source_id, target_id, up_to_version
            )
        self._logger.debug(
            "subtree_cloned",
            source_session_id=source_id,
            target_session_id=target_id,
            versions=len(copied),
        )
        return copied

    async def working_version_dir(self, session_id: str) -> Path:
        """Return the pending version's directory, or HEAD's when no turn has seeded one."""
        async with self._registry.locked(session_id) as session:
            version = session.pending_version
            if version is None or not await asyncio.to_thread(
                self._layout.version_exists, session_id, version
            ):
                version = session.current_version
            return self._layout.version_dir(session_id, version)

    # ── Internals ──────────────────────────────────────────────────────────────

    async def _read_unlocked(self, session: Session, version: int) -> FileSnapshot:
        if version > session.current_version:
            raise VersionExceedsHeadError(session.id, version, session.current_version)
        files = await asyncio.to_thread(self._layout.read_files, session.id, version)
        if files is not None:
            return files
        if version == session.current_version:
            return session.files
        if version in session.turns.values():
            await asyncio.to_thread(
                self._layout.materialize_version, session.id, version, session.files
            )
            files = await asyncio.to_thread(self._layout.read_files, session.id, version)
            if files is not None:
                return files
        raise VersionNotFoundError(session.id, version)
