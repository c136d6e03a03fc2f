"""Turn ledger: ``turn → version`` and the two per-turn chat logs."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog

from pagecraft.events.bus import EventBus, PagecraftEvent
from pagecraft.models.chat import ChatEntry
from pagecraft.models.files import FileSnapshot
from pagecraft.models.results import UndoResult
from pagecraft.store.errors import NothingToUndoError, TurnNotFoundError
from pagecraft.store.registry import SessionRegistry


class TurnLedger:
    """
    Owns the turn counter, the turn → version map and the chat logs.

    Two logs are kept per session:

    - **history**: UI-facing. User entries are always kept; other entries
      only when they carry visible text.
    - **context**: the full log fed back to the completion engine,
      including structured tool-call / tool-result parts.

    A turn is recorded at HEAD when it begins, so previewing an in-flight
    turn always resolves to a stable version. When the turn commits a new
    version, :meth:`seal_turn` moves the turn (and every entry tagged with
    it) to that version.
    """

    def __init__(self, registry: SessionRegistry, event_bus: EventBus | None = None) -> None:
        self._registry = registry
        self._bus = event_bus
        self._logger = structlog.get_logger("pagecraft.ledger")

    async def begin_turn(
        self,
        session_id: str,
        user_entry: ChatEntry,
        context_entry: ChatEntry | None = None,
    ) -> int:
        """
        Open a new turn and append the user's entry to both logs.

        Args:
            session_id: Session to append to.
            user_entry: Entry shown in the UI history.
            context_entry: Model-facing copy of the entry. Defaults to *user_entry*.

        Returns:
            The new ``last_turn``.
        """
        async with self._registry.locked(session_id) as session:
            turn = session.last_turn + 1
            version = session.current_version
            session.last_turn = turn
            session.turns[turn] = version
            # a version seeded by an earlier uncommitted turn must be reseeded from HEAD
            session.pending_version = None
            session.history.append(user_entry.tagged(turn=turn, version=version))
            session.context.append((context_entry or user_entry).tagged(turn=turn, version=version))
            await self._registry.persist_meta(session)
            await self._registry.persist_logs(session, [version])

        self._logger.info("turn_started", session_id=session_id, turn=turn, version=version)
        if self._bus is not None:
            self._bus.publish(
                PagecraftEvent.TURN_STARTED,
                {"session_id": session_id, "turn": turn, "version": version},
            )
        return turn

    async def resolve_version_for_turn(self, session_id: str, turn: int) -> int:
        """
        Return the version recorded for *turn*.

        Raises:
            TurnNotFoundError: If the turn was never opened (or was undone).
        """
        async with self._registry.locked(session_id) as session:
            version = session.version_for_turn(turn)
        if version is None:
            raise TurnNotFoundError(session_id, turn)
        return version

    async def seal_turn(self, session_id: str, version: int) -> None:
        """Point the current turn, and every entry tagged with it, at the committed *version*."""
        async with self._registry.locked(session_id) as session:
            turn = session.last_turn
            previous = session.turns.get(turn, session.current_version)
            if previous == version:
                return
            session.turns[turn] = version
            session.history = [
                e.tagged(turn=turn, version=version) if e.turn == turn else e
                for e in session.history
            ]
            session.context = [
                e.tagged(turn=turn, version=version) if e.turn == turn else e
                for e in session.context
            ]
            await self._registry.persist_meta(session)
            await self._registry.persist_logs(session, [previous, version])
        self._logger.debug("turn_sealed", session_id=session_id, turn=turn, version=version)

    async def append_assistant_entries(
        self,
        session_id: str,
        entries: Sequence[ChatEntry],
        *,
        history_only: bool = False,
    ) -> None:
        """
        Merge model output into the logs, tagged with the current turn and HEAD.

        Every entry goes to context (unless *history_only*); only visible
        ones go to history, rendered to plain text.
        """
        if not entries:
            return
        async with self._registry.locked(session_id) as session:
            turn = session.last_turn
            version = session.current_version
            for entry in entries:
                tagged = entry.tagged(turn=turn, version=version)
                if not history_only:
                    session.context.append(tagged)
                if tagged.visible_in_history:
                    session.history.append(tagged.for_history())
            await self._registry.persist_meta(session)
            await self._registry.persist_logs(session, [version])

    async def undo_last_turn(self, session_id: str) -> UndoResult:
        """
        Remove the last turn from both logs and roll HEAD back to the prior turn's version.

        Version directories are left on disk; HEAD decides visibility, and the
        next :meth:`~pagecraft.store.versions.VersionStore.init_next_version`
        overwrites a stale directory.

        Raises:
            NothingToUndoError: If only turn 0 remains.
        """
        async with self._registry.locked(session_id) as session:
            undone = session.last_turn
            if undone <= 0:
                raise NothingToUndoError(session_id)

            removed_user = next(
                (e for e in session.history if e.turn == undone and e.role == "user"), None
            )
            touched = {e.version for e in session.history if e.turn == undone}
            touched |= {e.version for e in session.context if e.turn == undone}
            session.history = [e for e in session.history if e.turn != undone]
            session.context = [e for e in session.context if e.turn != undone]

            session.turns.pop(undone, None)
            session.last_turn = undone - 1
            session.current_version = session.turns.get(session.last_turn, 0)
            session.pending_version = None
            files = await self._read_head(session_id, session.current_version)
            if files is not None:
                session.files = files

            await self._registry.persist_meta(session)
            await self._registry.persist_logs(
                session, [v for v in touched if v <= session.current_version]
            )
            result = UndoResult(
                session_id=session_id,
                undone_turn=undone,
                current_version=session.current_version,
                last_turn=session.last_turn,
                restored_selection=removed_user.selection if removed_user else None,
                restored_input=removed_user.ui_text() if removed_user else None,
            )

        self._logger.info(
            "turn_undone",
            session_id=session_id,
            turn=undone,
            current_version=result.current_version,
        )
        if self._bus is not None:
            self._bus.publish(
                PagecraftEvent.TURN_UNDONE,
                {"session_id": session_id, "turn": undone, "version": result.current_version},
            )
        return result

    async def history(self, session_id: str) -> list[ChatEntry]:
        """Return a copy of the full UI history."""
        async with self._registry.locked(session_id) as session:
            return [e.model_copy() for e in session.history]

    async def history_for_turn(self, session_id: str, turn: int) -> list[ChatEntry]:
        """
        Return the UI history up to and including *turn*.

        Raises:
            TurnNotFoundError: If the turn does not exist.
        """
        async with self._registry.locked(session_id) as session:
            if turn not in session.turns:
                raise TurnNotFoundError(session_id, turn)
            return [e.model_copy() for e in session.history if e.turn <= turn]

    async def context(self, session_id: str) -> list[ChatEntry]:
        """Return a copy of the full model-context log."""
        async with self._registry.locked(session_id) as session:
            return [e.model_copy() for e in session.context]

    async def _read_head(self, session_id: str, version: int) -> FileSnapshot | None:
        return await asyncio.to_thread(self._registry.layout.read_files, session_id, version)
