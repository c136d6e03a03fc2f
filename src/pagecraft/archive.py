"""Zip export of one turn: the three page files plus that version's images."""

from __future__ import annotations

import io
import zipfile
from collections.abc import Iterable

from pagecraft.models.files import FileSnapshot
from pagecraft.store.layout import sanitize_session_id


def archive_filename(session_id: str, turn: int) -> str:
    """Suggested download name, e.g. ``session-page_01J...-turn3.zip``."""
    return f"session-{sanitize_session_id(session_id)}-turn{turn}.zip"


def build_turn_archive(files: FileSnapshot, assets: Iterable[tuple[str, bytes]] = ()) -> bytes:
    """
    Build a deflated zip holding the page files at the archive root.

    Args:
        files: The snapshot to export.
        assets: ``(filename, bytes)`` pairs stored next to the page files.

    Returns:
        The zip file contents.
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
        for name, data in assets:
            zf.writestr(name, data)
    return buffer.getvalue()
