"""Store exceptions.

Storage errors guard invariants (HEAD pointer, turn mapping, snapshot
existence) and are raised to callers as programmer errors. They are never
turned into user-facing tool results.
"""

from __future__ import annotations


class PagecraftStoreError(Exception):
    """Base class for store errors."""


class SessionNotFoundError(PagecraftStoreError):
    """Raised when a session_id does not exist on disk or in memory."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class NotInitializedError(PagecraftStoreError):
    """Raised when files are committed to a version that ``init_next_version`` never seeded."""

    def __init__(self, session_id: str, version: int) -> None:
        super().__init__(
            f"Version {version} of session {session_id!r} is not initialized; "
            "call init_next_version() first"
        )
        self.session_id = session_id
        self.version = version


class VersionExceedsHeadError(PagecraftStoreError):
    """Raised when a version beyond ``current_version`` is requested."""

    def __init__(self, session_id: str, version: int, head: int) -> None:
        super().__init__(
            f"Version {version} exceeds current version {head} of session {session_id!r}"
        )
        self.session_id = session_id
        self.version = version
        self.head = head


class VersionNotFoundError(PagecraftStoreError):
    """Raised when a non-HEAD version has no snapshot on disk and cannot be materialized."""

    def __init__(self, session_id: str, version: int) -> None:
        super().__init__(f"Files for version {version} of session {session_id!r} not found")
        self.session_id = session_id
        self.version = version


class TurnNotFoundError(PagecraftStoreError):
    """Raised when a turn number has no recorded version."""

    def __init__(self, session_id: str, turn: int) -> None:
        super().__init__(f"Turn {turn} not found in session {session_id!r}")
        self.session_id = session_id
        self.turn = turn


class NothingToUndoError(PagecraftStoreError):
    """Raised by ``undo_last_turn`` when only the initial turn remains."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Nothing to undo in session {session_id!r}")
        self.session_id = session_id


class CloneSourceInvalidError(PagecraftStoreError):
    """Raised when a clone cut point (turn or version) is not in the source history."""


class InvalidFileKeyError(PagecraftStoreError):
    """Raised when a file name is not one of the three page files."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Not a page file: {name!r}")
        self.name = name
