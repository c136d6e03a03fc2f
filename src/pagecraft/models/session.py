"""Session state: HEAD pointer, turn ledger and the two chat logs."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from pagecraft.models.chat import CamelModel, ChatEntry, utcnow
from pagecraft.models.files import DEFAULT_FILES, FileSnapshot

_META_FIELDS = {
    "id",
    "updated_at",
    "group",
    "current_version",
    "last_turn",
    "image_generation_allowed",
    "turns",
    "pending_version",
}


class Session(CamelModel):
    """
    A single page-editing session.

    Owned by :class:`~pagecraft.store.registry.SessionRegistry`; callers only
    ever receive deep copies, so mutating a returned ``Session`` never affects
    the authoritative state.

    Invariants:
    - ``current_version`` only moves forward, except when a turn is undone.
    - ``last_turn`` only moves forward, except when a turn is undone.
    - ``turns`` maps every turn ``0..last_turn`` to the version it resolves to.
    """

    id: str
    group: int = 0
    current_version: int = Field(default=0, ge=0)
    """HEAD. Advanced only by ``VersionStore.commit_files``."""
    last_turn: int = Field(default=0, ge=0)
    image_generation_allowed: bool = True
    updated_at: datetime = Field(default_factory=utcnow)
    turns: dict[int, int] = Field(default_factory=lambda: {0: 0})
    """turn → version. Turn 0 is the session's initial state."""
    pending_version: int | None = None
    """Version directory seeded by ``init_next_version`` and not yet committed."""

    # In-memory only; persisted under versions/<n>/ rather than session.json.
    files: FileSnapshot = Field(default=DEFAULT_FILES, exclude=True)
    history: list[ChatEntry] = Field(default_factory=list, exclude=True)
    context: list[ChatEntry] = Field(default_factory=list, exclude=True)

    def meta_json(self) -> dict[str, Any]:
        """Return the ``session.json`` payload."""
        return self.model_dump(mode="json", by_alias=True, include=_META_FIELDS)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def version_for_turn(self, turn: int) -> int | None:
        return self.turns.get(turn)

    def first_turn_for_version(self, version: int) -> int | None:
        """Return the earliest turn that resolves to *version*, or None."""
        matches = [turn for turn, v in self.turns.items() if v == version]
        return min(matches) if matches else None
