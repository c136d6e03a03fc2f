"""Tests for SessionLifecycle: creation, cloning and background hydration."""

from __future__ import annotations

import asyncio

import pytest

from pagecraft.events.bus import PagecraftEvent
from pagecraft.lifecycle import SYSTEM_SOURCE, make_id
from pagecraft.store.errors import CloneSourceInvalidError, SessionNotFoundError
from tests.conftest import committed_turn, statuses


def created_events(bus) -> list[dict]:
    return [p for e, p in bus.collected if e == PagecraftEvent.SESSION_CREATED]


class TestMakeId:
    def test_prefix_and_uniqueness(self) -> None:
        ids = {make_id("page") for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith("page_") for i in ids)


class TestCreate:
    async def test_concurrent_creates_coalesce(self, lifecycle) -> None:
        """Concurrent create() calls with one nonce resolve to the same session."""
        a, b, c = await asyncio.gather(lifecycle.create(), lifecycle.create(), lifecycle.create())
        assert a.id == b.id == c.id

    async def test_settled_create_is_forgotten(self, lifecycle) -> None:
        first = await lifecycle.create()
        second = await lifecycle.create()
        assert first.id != second.id

    async def test_distinct_nonces_do_not_coalesce(self, lifecycle) -> None:
        a, b = await asyncio.gather(lifecycle.create("tab-1"), lifecycle.create("tab-2"))
        assert a.id != b.id

    async def test_create_announces_system_source(self, lifecycle, event_bus) -> None:
        session = await lifecycle.create()
        assert created_events(event_bus) == [
            {
                "source_session_id": SYSTEM_SOURCE,
                "new_session_id": session.id,
                "group": session.group,
            }
        ]

    async def test_get_unknown_raises(self, lifecycle) -> None:
        with pytest.raises(SessionNotFoundError):
            await lifecycle.get("page_missing")

    async def test_begin_create_hydrates_in_background(self, lifecycle, event_bus) -> None:
        pending = lifecycle.begin_create()
        await lifecycle.wait_for_background()

        session = await lifecycle.get(pending.id)
        assert session.group == pending.group
        assert created_events(event_bus)[-1]["new_session_id"] == pending.id


class TestClone:
    async def test_clone_at_version_matches_source(
        self, lifecycle, ledger, versions, session_id
    ) -> None:
        """A clone at v has the source's snapshot of v and no later history."""
        await committed_turn(ledger, versions, session_id, "one")
        await committed_turn(ledger, versions, session_id, "two")

        clone = await lifecycle.clone_at_version(session_id, 1)

        assert clone.id != session_id
        assert clone.current_version == 1
        assert clone.last_turn == 1
        assert await versions.read_snapshot(clone.id, 1) == await versions.read_snapshot(
            session_id, 1
        )
        assert clone.history
        assert all(e.turn <= 1 for e in clone.history)
        assert all(e.turn <= 1 for e in clone.context)

    async def test_clone_never_mutates_source(
        self, lifecycle, ledger, versions, registry, session_id
    ) -> None:
        await committed_turn(ledger, versions, session_id, "one")
        before = await registry.snapshot(session_id)

        clone = await lifecycle.clone_at_turn(session_id, 0)
        target = await versions.init_next_version(clone.id)
        await versions.commit_files(clone.id, before.files.replace("js", "// clone"), target)

        after = await registry.snapshot(session_id)
        assert after.current_version == before.current_version
        assert after.files == before.files
        assert after.history == before.history

    async def test_clone_inherits_group(self, lifecycle, registry, session_id) -> None:
        source = await registry.snapshot(session_id)
        clone = await lifecycle.clone(session_id)
        assert clone.group == source.group

    async def test_clone_copies_historical_edits(self, lifecycle, versions, session_id) -> None:
        await versions.edit_historical_file(session_id, 0, "index.html", "<p>fixed</p>")
        clone = await lifecycle.clone_at_turn(session_id, 0)
        assert (await versions.read_snapshot(clone.id, 0)).markup == "<p>fixed</p>"

    async def test_invalid_cut_points(self, lifecycle, session_id) -> None:
        with pytest.raises(CloneSourceInvalidError):
            await lifecycle.clone_at_turn(session_id, 5)
        with pytest.raises(CloneSourceInvalidError):
            await lifecycle.clone_at_version(session_id, 3)

    async def test_begin_clone_at_turn(
        self, lifecycle, ledger, versions, registry, event_bus, session_id
    ) -> None:
        await committed_turn(ledger, versions, session_id, "one")
        source = await registry.snapshot(session_id)

        pending = await lifecycle.begin_clone_at_turn(session_id, 1)
        assert pending.group == source.group
        assert (pending.current_turn, pending.current_version) == (1, 1)
        await lifecycle.wait_for_background()

        clone = await lifecycle.get(pending.id)
        assert clone.last_turn == 1
        assert created_events(event_bus)[-1] == {
            "source_session_id": session_id,
            "new_session_id": pending.id,
            "group": source.group,
        }

    async def test_begin_clone_rejects_unknown_turn(self, lifecycle, session_id) -> None:
        with pytest.raises(CloneSourceInvalidError):
            await lifecycle.begin_clone_at_turn(session_id, 9)


class TestBackgroundTasks:
    async def test_failure_is_published_not_raised(self, lifecycle, event_bus) -> None:
        """A failing background task becomes a chat.status error keyed by its session."""

        async def boom() -> None:
            raise RuntimeError("disk full")

        lifecycle.spawn(boom(), session_id="page_bg", operation="test")
        await lifecycle.wait_for_background()

        assert statuses(event_bus, "page_bg") == [
            {"session_id": "page_bg", "status": "error", "details": "disk full"}
        ]


class TestMutation:
    async def test_set_image_generation_allowed(self, lifecycle, registry, session_id) -> None:
        session = await lifecycle.set_image_generation_allowed(session_id, False)
        assert session.image_generation_allowed is False
        meta = registry.layout.read_meta(session_id)
        assert meta["imageGenerationAllowed"] is False

    async def test_delete(self, lifecycle, event_bus, session_id) -> None:
        assert await lifecycle.delete(session_id) is True
        assert await lifecycle.exists(session_id) is False
        assert (PagecraftEvent.SESSION_DELETED, {"session_id": session_id}) in event_bus.collected
        assert await lifecycle.delete(session_id) is False
