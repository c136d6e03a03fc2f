"""Tests for the on-disk layout, the session registry and the VersionStore."""

from __future__ import annotations

import json
import shutil

import pytest

from pagecraft.events.bus import PagecraftEvent
from pagecraft.models.chat import ChatEntry
from pagecraft.models.files import DEFAULT_FILES
from pagecraft.store.errors import (
    InvalidFileKeyError,
    NotInitializedError,
    SessionNotFoundError,
    VersionExceedsHeadError,
    VersionNotFoundError,
)
from pagecraft.store.layout import SessionLayout, atomic_write_text, sanitize_session_id
from pagecraft.store.registry import SessionRegistry
from pagecraft.store.versions import VersionStore


class TestLayout:
    def test_sanitize_session_id(self) -> None:
        assert sanitize_session_id("page_01-AB") == "page_01-AB"
        assert sanitize_session_id("../etc/passwd") == "___etc_passwd"
        assert sanitize_session_id("") == "default"

    def test_session_dir_uses_sanitized_id(self, layout: SessionLayout) -> None:
        assert layout.session_dir("a/b").name == "a_b"
        assert layout.session_dir("a/b").parent == layout.root

    def test_negative_version_rejected(self, layout: SessionLayout) -> None:
        with pytest.raises(ValueError):
            layout.version_dir("s", -1)

    def test_atomic_write_leaves_no_temp_files(self, tmp_path) -> None:
        target = tmp_path / "nested" / "file.txt"
        atomic_write_text(target, "first")
        atomic_write_text(target, "second")
        assert target.read_text() == "second"
        assert [p.name for p in target.parent.iterdir()] == ["file.txt"]

    def test_read_files_missing_version_returns_none(self, layout: SessionLayout) -> None:
        assert layout.read_files("nobody", 0) is None

    def test_read_files_missing_file_falls_back_to_default(self, layout: SessionLayout) -> None:
        layout.write_files("s", 0, DEFAULT_FILES)
        (layout.version_dir("s", 0) / "script.js").unlink()
        files = layout.read_files("s", 0)
        assert files is not None
        assert files.script == DEFAULT_FILES.script

    def test_seed_version_skips_chat_logs(self, layout: SessionLayout) -> None:
        layout.write_files("s", 0, DEFAULT_FILES)
        layout.write_entries("s", 0, "messages", [ChatEntry(role="user", content="hi")])
        (layout.version_dir("s", 0) / "img.png").write_bytes(b"png")

        layout.seed_version("s", 0, 1, DEFAULT_FILES)

        names = {p.name for p in layout.version_dir("s", 1).iterdir()}
        assert names == {"index.html", "styles.css", "script.js", "img.png"}

    def test_asset_path_rejects_traversal(self, layout: SessionLayout) -> None:
        assert layout.asset_path("s", 0, "a-b_c.png").name == "a-b_c.png"
        for bad in ("../session.json", "a/b.png", "..", ""):
            with pytest.raises(ValueError):
                layout.asset_path("s", 0, bad)

    def test_copy_versions_respects_cut(self, layout: SessionLayout) -> None:
        for v in range(3):
            layout.write_files("src", v, DEFAULT_FILES.replace("styles.css", f"/* v{v} */"))
        copied = layout.copy_versions("src", "dst", 1)
        assert copied == [0, 1]
        assert layout.version_numbers("dst") == [0, 1]


class TestSessionRegistry:
    async def test_get_or_create_writes_version_zero(self, registry: SessionRegistry) -> None:
        """An unknown id gets a fresh session with the default page on disk."""
        session = await registry.get_or_create("page_new")
        assert session.current_version == 0
        assert session.last_turn == 0
        assert session.turns == {0: 0}
        assert 0 <= session.group < 32
        assert registry.layout.read_files("page_new", 0) == DEFAULT_FILES

        meta = json.loads(registry.layout.meta_path("page_new").read_text())
        assert meta["id"] == "page_new"
        assert meta["currentVersion"] == 0
        assert "updatedAt" in meta

    async def test_snapshot_unknown_raises(self, registry: SessionRegistry) -> None:
        with pytest.raises(SessionNotFoundError):
            await registry.snapshot("page_missing")

    async def test_returned_copies_are_detached(self, registry, session_id) -> None:
        """Mutating a returned Session never touches the cached one."""
        copy = await registry.snapshot(session_id)
        copy.current_version = 99
        copy.history.append(ChatEntry(role="user", content="x"))
        fresh = await registry.snapshot(session_id)
        assert fresh.current_version == 0
        assert fresh.history == []

    async def test_state_survives_a_new_registry(self, layout, versions, session_id) -> None:
        """A second registry over the same root hydrates HEAD, files and turns from disk."""
        target = await versions.init_next_version(session_id)
        new_files = DEFAULT_FILES.replace("styles.css", "body { color: red; }")
        await versions.commit_files(session_id, new_files, target)

        reloaded = await SessionRegistry(layout).snapshot(session_id)
        assert reloaded.current_version == 1
        assert reloaded.files == new_files

    async def test_remove_deletes_subtree(self, registry, session_id) -> None:
        assert await registry.remove(session_id) is True
        assert not registry.layout.session_dir(session_id).exists()
        assert await registry.exists(session_id) is False
        assert await registry.remove(session_id) is False


class TestVersionStore:
    async def test_init_next_version_is_idempotent(self, versions, layout, session_id) -> None:
        """Two calls without a commit yield the same number and one directory."""
        first = await versions.init_next_version(session_id)
        marker = layout.version_dir(session_id, first) / "styles.css"
        marker.write_text("edited in working copy")

        second = await versions.init_next_version(session_id)

        assert first == second == 1
        assert marker.read_text() == "edited in working copy"
        assert layout.version_numbers(session_id) == [0, 1]

    async def test_init_does_not_move_head(self, versions, registry, session_id) -> None:
        await versions.init_next_version(session_id)
        session = await registry.snapshot(session_id)
        assert session.current_version == 0
        assert session.pending_version == 1

    async def test_commit_advances_head(self, versions, event_bus, session_id) -> None:
        target = await versions.init_next_version(session_id)
        files = DEFAULT_FILES.replace("index.html", "<p>v1</p>")
        session = await versions.commit_files(session_id, files, target)

        assert session.current_version == 1
        assert session.pending_version is None
        assert await versions.read_current(session_id) == files
        assert (PagecraftEvent.VERSION_COMMITTED, {"session_id": session_id, "version": 1}) in (
            event_bus.collected
        )

    async def test_commit_without_init_raises(self, versions, session_id) -> None:
        with pytest.raises(NotInitializedError):
            await versions.commit_files(session_id, DEFAULT_FILES, 1)

    async def test_head_is_monotonic(self, versions, session_id) -> None:
        """Committing to an older version rewrites it but never moves HEAD back."""
        for _ in range(2):
            target = await versions.init_next_version(session_id)
            await versions.commit_files(session_id, DEFAULT_FILES, target)

        older = DEFAULT_FILES.replace("script.js", "// rewritten v1")
        session = await versions.commit_files(session_id, older, 1)

        assert session.current_version == 2
        assert await versions.read_snapshot(session_id, 1) == older

    async def test_read_beyond_head_raises(self, versions, session_id) -> None:
        with pytest.raises(VersionExceedsHeadError):
            await versions.read_snapshot(session_id, 1)

    async def test_read_unmaterialized_version_raises(self, versions, layout, session_id) -> None:
        for _ in range(2):
            target = await versions.init_next_version(session_id)
            await versions.commit_files(session_id, DEFAULT_FILES, target)
        # version 1 is not referenced by any turn, so it cannot be rebuilt
        shutil.rmtree(layout.version_dir(session_id, 1))
        with pytest.raises(VersionNotFoundError):
            await versions.read_snapshot(session_id, 1)

    async def test_edit_historical_file_leaves_head_untouched(
        self, versions, session_id
    ) -> None:
        """Editing v0 while HEAD is v2 changes v0 only."""
        for n in (1, 2):
            target = await versions.init_next_version(session_id)
            await versions.commit_files(
                session_id, DEFAULT_FILES.replace("styles.css", f"/* v{n} */"), target
            )
        head_before = await versions.read_snapshot(session_id, 2)

        await versions.edit_historical_file(session_id, 0, "styles.css", "body { color: teal; }")

        assert await versions.read_snapshot(session_id, 2) == head_before
        assert (await versions.read_snapshot(session_id, 0)).styles == "body { color: teal; }"

    async def test_edit_at_head_updates_live_files(self, versions, layout, session_id) -> None:
        await versions.init_next_version(session_id)
        await versions.edit_historical_file(session_id, 0, "css", "h1 {}")
        assert (await versions.read_current(session_id)).styles == "h1 {}"
        # the seeded next version no longer mirrors HEAD, so it is seeded again
        target = await versions.init_next_version(session_id)
        assert target == 1
        assert layout.read_files(session_id, 1).styles == "h1 {}"

    async def test_edit_unknown_file_rejected(self, versions, session_id) -> None:
        with pytest.raises(InvalidFileKeyError):
            await versions.edit_historical_file(session_id, 0, "main.py", "")

    async def test_clone_subtree_copies_edited_bytes(self, versions, layout, session_id) -> None:
        await versions.edit_historical_file(session_id, 0, "index.html", "<p>edited</p>")
        await versions.clone_subtree(session_id, "page_copy", 0)
        copied = layout.read_files("page_copy", 0)
        assert copied is not None
        assert copied.markup == "<p>edited</p>"

    async def test_working_version_dir(self, versions, layout, session_id) -> None:
        assert await versions.working_version_dir(session_id) == layout.version_dir(session_id, 0)
        await versions.init_next_version(session_id)
        assert await versions.working_version_dir(session_id) == layout.version_dir(session_id, 1)


class TestVersionStoreFreshRegistry:
    async def test_unknown_session_raises(self, layout) -> None:
        store = VersionStore(SessionRegistry(layout))
        with pytest.raises(SessionNotFoundError):
            await store.read_current("page_nope")
