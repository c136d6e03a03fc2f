"""Pagecraft session store: on-disk layout, session cache, versions and turns."""

from pagecraft.store.errors import (
    CloneSourceInvalidError,
    InvalidFileKeyError,
    NothingToUndoError,
    NotInitializedError,
    PagecraftStoreError,
    SessionNotFoundError,
    TurnNotFoundError,
    VersionExceedsHeadError,
    VersionNotFoundError,
)
from pagecraft.store.layout import SessionLayout, atomic_write_text, sanitize_session_id
from pagecraft.store.ledger import TurnLedger
from pagecraft.store.registry import SessionRegistry
from pagecraft.store.versions import VersionStore

__all__ = [
    "CloneSourceInvalidError",
    "InvalidFileKeyError",
    "NotInitializedError",
    "NothingToUndoError",
    "PagecraftStoreError",
    "SessionLayout",
    "SessionNotFoundError",
    "SessionRegistry",
    "TurnLedger",
    "TurnNotFoundError",
    "VersionExceedsHeadError",
    "VersionNotFoundError",
    "VersionStore",
    "atomic_write_text",
    "sanitize_session_id",
]
