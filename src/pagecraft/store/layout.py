"""
On-disk layout of the session tree.

One directory per session (sanitized id as folder name), one
sub-directory per version::

    <root>/<session_id>/session.json
    <root>/<session_id>/versions/<n>/index.html
    <root>/<session_id>/versions/<n>/styles.css
    <root>/<session_id>/versions/<n>/script.js
    <root>/<session_id>/versions/<n>/messages.json   # UI history entries tagged with n
    <root>/<session_id>/versions/<n>/context.json    # model-context entries tagged with n
    <root>/<session_id>/versions/<n>/images.json     # image metadata
    <root>/<session_id>/versions/<n>/<uuid>.png      # generated images

All methods are synchronous and blocking; async callers run them through
``asyncio.to_thread``. Writes go through a temp file + ``os.replace`` and
new version directories are staged and renamed into place, so a crash never
leaves a half-written snapshot behind.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any, Literal

import structlog

from pagecraft.models.chat import ChatEntry
from pagecraft.models.files import DEFAULT_FILES, FILE_KEYS, FileSnapshot

VERSION_DIRNAME = "versions"
META_FILENAME = "session.json"
LogKind = Literal["messages", "context"]

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")
_LOG_FILES = {"messages.json", "context.json"}

_logger = structlog.get_logger("pagecraft.store.layout")


def sanitize_session_id(value: str) -> str:
    """Map a session id to a safe folder name. Empty ids map to ``"default"``."""
    if not value:
        return "default"
    return _UNSAFE_ID_CHARS.sub("_", value) or "default"


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Atomically write text to *path* (temp file in the same directory + rename)."""
    atomic_write_bytes(path, content.encode(encoding))


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Atomically write *data* to *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


class SessionLayout:
    """Path resolution and blocking file I/O for one session root."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    # ── Paths ──────────────────────────────────────────────────────────────────

    def session_dir(self, session_id: str) -> Path:
        return self._root / sanitize_session_id(session_id)

    def versions_dir(self, session_id: str) -> Path:
        return self.session_dir(session_id) / VERSION_DIRNAME

    def version_dir(self, session_id: str, version: int) -> Path:
        if version < 0:
            raise ValueError(f"Invalid version {version}")
        return self.versions_dir(session_id) / str(version)

    def meta_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / META_FILENAME

    # ── Session metadata ───────────────────────────────────────────────────────

    def ensure_root(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def read_meta(self, session_id: str) -> dict[str, Any] | None:
        """Return the parsed ``session.json``, or None if the session is not on disk."""
        path = self.meta_path(session_id)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def write_meta(self, session_id: str, payload: dict[str, Any]) -> None:
        atomic_write_text(self.meta_path(session_id), json.dumps(payload, indent=2))

    def list_session_ids(self) -> list[str]:
        """Return the folder names of every session that has a ``session.json``."""
        if not self._root.exists():
            return []
        return sorted(
            child.name
            for child in self._root.iterdir()
            if child.is_dir() and (child / META_FILENAME).exists()
        )

    def remove_session(self, session_id: str) -> bool:
        """Delete the whole session subtree. Returns False if nothing was there."""
        path = self.session_dir(session_id)
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True

    # ── Version snapshots ──────────────────────────────────────────────────────

    def version_exists(self, session_id: str, version: int) -> bool:
        return self.version_dir(session_id, version).is_dir()

    def version_numbers(self, session_id: str) -> list[int]:
        """Return the version numbers that have a directory on disk, ascending."""
        path = self.versions_dir(session_id)
        if not path.exists():
            return []
        return sorted(int(child.name) for child in path.iterdir() if child.name.isdigit())

    def read_files(self, session_id: str, version: int) -> FileSnapshot | None:
        """
        Read a version's three files.

        Returns None if the version directory does not exist. Individual
        missing files fall back to the default page content.
        """
        vdir = self.version_dir(session_id, version)
        if not vdir.is_dir():
            return None
        contents: dict[str, str] = {}
        for key in FILE_KEYS:
            path = vdir / key
            if path.exists():
                contents[key] = path.read_text(encoding="utf-8")
            else:
                contents[key] = DEFAULT_FILES.get(key)
        return FileSnapshot(
            markup=contents["index.html"],
            styles=contents["styles.css"],
            script=contents["script.js"],
        )

    def write_files(self, session_id: str, version: int, files: FileSnapshot) -> None:
        vdir = self.version_dir(session_id, version)
        for key, content in files.items():
            atomic_write_text(vdir / key, content)

    def write_file(self, session_id: str, version: int, key: str, content: str) -> None:
        atomic_write_text(self.version_dir(session_id, version) / key, content)

    def seed_version(
        self,
        session_id: str,
        source_version: int,
        target_version: int,
        fallback: FileSnapshot,
    ) -> None:
        """
        Create ``target_version`` as a deep copy of ``source_version``.

        Files and auxiliary assets (images, ``images.json``) are copied; the
        per-version chat logs are not, because they belong to the source
        version. Any stale directory already at ``target_version`` is
        replaced. The copy is staged next to the target and renamed into
        place. If the source directory is missing, *fallback* is written.
        """
        source = self.version_dir(session_id, source_version)
        target = self.version_dir(session_id, target_version)
        target.parent.mkdir(parents=True, exist_ok=True)
        staging = target.parent / f".staging-{target_version}-{uuid.uuid4().hex[:8]}"
        try:
            if source.is_dir():
                shutil.copytree(
                    source,
                    staging,
                    ignore=lambda _dir, names: [n for n in names if n in _LOG_FILES],
                )
            else:
                staging.mkdir(parents=True)
                for key, content in fallback.items():
                    (staging / key).write_text(content, encoding="utf-8")
            if target.exists():
                shutil.rmtree(target)
            os.replace(staging, target)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def materialize_version(self, session_id: str, version: int, fallback: FileSnapshot) -> bool:
        """
        Ensure ``version`` has a directory, copying it from the nearest earlier one.

        Returns True if a directory had to be created.
        """
        if self.version_exists(session_id, version):
            return False
        earlier = [v for v in self.version_numbers(session_id) if v < version]
        source = earlier[-1] if earlier else version
        self.seed_version(session_id, source, version, fallback)
        _logger.info(
            "version_materialized", session_id=session_id, version=version, source_version=source
        )
        return True

    def copy_versions(
        self,
        source_id: str,
        target_id: str,
        up_to_version: int | None = None,
    ) -> list[int]:
        """
        Replace the target's version tree with the source's versions ``0..up_to_version``.

        ``up_to_version=None`` copies every version. Versions missing in the
        source are skipped. Returns the copied version numbers.
        """
        target_root = self.versions_dir(target_id)
        if target_root.exists():
            shutil.rmtree(target_root)
        target_root.mkdir(parents=True, exist_ok=True)

        copied: list[int] = []
        for version in self.version_numbers(source_id):
            if up_to_version is not None and version > up_to_version:
                continue
            shutil.copytree(
                self.version_dir(source_id, version),
                self.version_dir(target_id, version),
            )
            copied.append(version)
        return copied

    # ── Chat logs ──────────────────────────────────────────────────────────────

    def read_entries(self, session_id: str, version: int, kind: LogKind) -> list[ChatEntry]:
        path = self.version_dir(session_id, version) / f"{kind}.json"
        if not path.exists():
            return []
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            _logger.warning("chat_log_malformed", path=str(path))
            return []
        return [ChatEntry.model_validate(item) for item in raw]

    def write_entries(
        self,
        session_id: str,
        version: int,
        kind: LogKind,
        entries: list[ChatEntry],
    ) -> None:
        payload = [entry.to_json_dict() for entry in entries]
        atomic_write_text(
            self.version_dir(session_id, version) / f"{kind}.json",
            json.dumps(payload, indent=2, ensure_ascii=False),
        )

    # ── Auxiliary assets ───────────────────────────────────────────────────────

    def asset_path(self, session_id: str, version: int, filename: str) -> Path:
        """Resolve *filename* inside a version directory, refusing path traversal."""
        if not re.fullmatch(r"[a-zA-Z0-9\-_.]+", filename) or filename in {".", ".."}:
            raise ValueError(f"Invalid asset filename: {filename!r}")
        return self.version_dir(session_id, version) / filename
