"""Tests for the image library, asset lookup and turn archives."""

from __future__ import annotations

import pytest

from pagecraft.archive import archive_filename, build_turn_archive
from pagecraft.images import MockImageGenerator, create_image_generator
from pagecraft.models.config import MOCK_ENV_VAR, ImageConfig
from pagecraft.models.files import DEFAULT_FILES
from pagecraft.store.errors import TurnNotFoundError
from tests.conftest import ScriptedEngine, call, zip_contents


class TestImageLibrary:
    async def test_generate_and_list(self, images, versions, session_id) -> None:
        version = await versions.init_next_version(session_id)
        name = await images.generate_and_save(session_id, "A lighthouse at dusk", version)

        assert name.endswith(".png")
        records = await images.list_images(session_id, version)
        assert [(r.filename, r.description, r.model) for r in records] == [
            (name, "A lighthouse at dusk", "mock")
        ]
        assert await images.list_images(session_id, 0) == []
        assert (await images.read_image(session_id, version, name)).startswith(b"\x89PNG")

    async def test_regenerate_replaces_record(self, images, versions, session_id) -> None:
        version = await versions.init_next_version(session_id)
        name = await images.generate_and_save(session_id, "first", version)
        again = await images.generate_and_save(session_id, "second", version, name)

        assert again == name
        records = await images.list_images(session_id, version)
        assert [r.description for r in records] == ["second"]

    async def test_images_follow_the_next_version(self, images, versions, session_id) -> None:
        """Images of HEAD are seeded into the next version directory."""
        first = await versions.init_next_version(session_id)
        name = await images.generate_and_save(session_id, "logo", first)
        await versions.commit_files(session_id, DEFAULT_FILES, first)

        second = await versions.init_next_version(session_id)
        assert [r.filename for r in await images.list_images(session_id, second)] == [name]

    async def test_rejects_path_traversal(self, images, session_id) -> None:
        with pytest.raises(ValueError, match="Invalid asset filename"):
            await images.generate_and_save(session_id, "x", 0, "../escape.png")

    async def test_missing_image_reads_none(self, images, session_id) -> None:
        assert await images.read_image(session_id, 0, "nope.png") is None

    def test_generator_selection(self, monkeypatch) -> None:
        monkeypatch.setenv(MOCK_ENV_VAR, "1")
        assert isinstance(create_image_generator(ImageConfig()), MockImageGenerator)
        monkeypatch.setenv(MOCK_ENV_VAR, "0")
        assert create_image_generator(ImageConfig(model="openai/dall-e-3")).model == (
            "openai/dall-e-3"
        )


class TestArchive:
    def test_page_files_at_root(self) -> None:
        contents = zip_contents(build_turn_archive(DEFAULT_FILES, [("a.png", b"png")]))
        assert set(contents) == {"index.html", "styles.css", "script.js", "a.png"}
        assert contents["styles.css"].decode() == DEFAULT_FILES.styles
        assert contents["a.png"] == b"png"

    def test_archive_filename(self) -> None:
        assert archive_filename("page/../x", 3) == "session-page____x-turn3.zip"


@pytest.fixture
def image_turn_engine():
    return ScriptedEngine(
        [
            [call("generate_image", description="A hero banner", summary="Adding a hero image")],
            [call("summary", message="Added a hero image.")],
        ]
    )


class TestStudioAssets:
    async def test_export_includes_turn_images(self, make_studio, image_turn_engine) -> None:
        studio = await make_studio(image_turn_engine)
        session = await studio.create_session()
        result = await studio.send(session.id, "Add a hero image")
        assert result.session.current_version == 1

        turn_one = zip_contents(await studio.export_turn_archive(session.id, 1))
        pngs = [n for n in turn_one if n.endswith(".png")]
        assert len(pngs) == 1
        assert "images.json" not in turn_one

        turn_zero = zip_contents(await studio.export_turn_archive(session.id, 0))
        assert set(turn_zero) == {"index.html", "styles.css", "script.js"}

    async def test_resolve_asset(self, make_studio, image_turn_engine) -> None:
        studio = await make_studio(image_turn_engine)
        session = await studio.create_session()
        await studio.send(session.id, "Add a hero image")
        tool_entry = (await studio.ledger.context(session.id))[2]
        name = tool_entry.content[0].output.value.removeprefix("Image generated successfully: ")

        path = await studio.resolve_asset(session.id, 1, name)
        assert path is not None
        assert path.read_bytes().startswith(b"\x89PNG")
        assert await studio.resolve_asset(session.id, 0, name) is None
        with pytest.raises(TurnNotFoundError):
            await studio.resolve_asset(session.id, 7, name)
        with pytest.raises(ValueError):
            await studio.resolve_asset(session.id, 1, "../session.json")
