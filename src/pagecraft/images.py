"""
Image collaborator: generation providers and the per-version image library.

Images live inside a version directory next to the page files, so they are
copied along with the version by ``init_next_version`` and by clones::

    versions/<n>/images.json     # [{filename, description, createdAt, model}, ...]
    versions/<n>/<uuid>.png
"""

from __future__ import annotations

import asyncio
import base64
import json
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog
from pydantic import Field, TypeAdapter, ValidationError

from pagecraft.models.chat import CamelModel, utcnow
from pagecraft.models.config import MOCK_ENV_VAR, ImageConfig
from pagecraft.store.layout import SessionLayout, atomic_write_bytes, atomic_write_text

IMAGES_FILENAME = "images.json"

# 1x1 transparent PNG returned by the mock generator.
_MOCK_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


class ImageGenerationError(Exception):
    """Raised when the provider returns no usable image."""


class ImageRecord(CamelModel):
    """One entry of ``images.json``."""

    filename: str
    description: str
    created_at: datetime = Field(default_factory=utcnow)
    model: str


_RECORDS = TypeAdapter(list[ImageRecord])


@runtime_checkable
class ImageGenerator(Protocol):
    """Turns a description into PNG bytes."""

    @property
    def model(self) -> str: ...

    async def generate(self, description: str) -> bytes: ...


class LiteLLMImageGenerator:
    """Image generator backed by ``litellm.aimage_generation``."""

    def __init__(self, config: ImageConfig) -> None:
        self._config = config

    @property
    def model(self) -> str:
        return self._config.model

    async def generate(self, description: str) -> bytes:
        import litellm

        response = await litellm.aimage_generation(
            model=self._config.model,
            prompt=description,
            response_format="b64_json",
        )
        data = response.data[0] if response.data else None
        b64 = getattr(data, "b64_json", None) if data is not None else None
        if not b64:
            raise ImageGenerationError(f"No image data in response from {self._config.model}")
        return base64.b64decode(b64)


class MockImageGenerator:
    """Offline generator (``PAGECRAFT_MOCK_LLM=1``): always a 1x1 PNG."""

    @property
    def model(self) -> str:
        return "mock"

    async def generate(self, description: str) -> bytes:
        return _MOCK_PNG


def create_image_generator(config: ImageConfig) -> ImageGenerator:
    if os.environ.get(MOCK_ENV_VAR) == "1":
        return MockImageGenerator()
    return LiteLLMImageGenerator(config)


class ImageLibrary:
    """
    Reads and writes the images of one version directory.

    Regenerating an existing filename overwrites the bytes and replaces its
    ``images.json`` entry; new images get a ``<uuid>.png`` name.
    """

    def __init__(self, layout: SessionLayout, generator: ImageGenerator) -> None:
        self._layout = layout
        self._generator = generator
        self._logger = structlog.get_logger("pagecraft.images")

    async def list_images(self, session_id: str, version: int) -> list[ImageRecord]:
        return await asyncio.to_thread(self._read_records, session_id, version)

    async def generate_and_save(
        self,
        session_id: str,
        description: str,
        version: int,
        filename: str | None = None,
    ) -> str:
        """
        Generate an image into *version* and record it.

        Returns:
            The filename the image was saved under.

        Raises:
            ValueError: If *filename* is not a plain file name.
            ImageGenerationError: If the provider returned nothing.
        """
        name = filename or f"{uuid.uuid4()}.png"
        path = self._layout.asset_path(session_id, version, name)
        self._logger.info(
            "image_generation_started",
            session_id=session_id,
            version=version,
            filename=name,
        )
        data = await self._generator.generate(description)
        record = ImageRecord(filename=name, description=description, model=self._generator.model)
        await asyncio.to_thread(self._save, session_id, version, path, data, record)
        self._logger.info(
            "image_saved", session_id=session_id, version=version, filename=name, bytes=len(data)
        )
        return name

    async def read_image(self, session_id: str, version: int, filename: str) -> bytes | None:
        path = self._layout.asset_path(session_id, version, filename)
        return await asyncio.to_thread(_read_bytes, path)

    def _metadata_path(self, session_id: str, version: int) -> Path:
        return self._layout.version_dir(session_id, version) / IMAGES_FILENAME

    def _read_records(self, session_id: str, version: int) -> list[ImageRecord]:
        path = self._metadata_path(session_id, version)
        if not path.exists():
            return []
        try:
            return _RECORDS.validate_json(path.read_bytes())
        except ValidationError as exc:
            self._logger.warning(
                "image_metadata_unreadable", session_id=session_id, version=version, error=str(exc)
            )
            return []

    def _save(
        self,
        session_id: str,
        version: int,
        path: Path,
        data: bytes,
        record: ImageRecord,
    ) -> None:
        atomic_write_bytes(path, data)
        records = [
            r for r in self._read_records(session_id, version) if r.filename != record.filename
        ]
        records.append(record)
        atomic_write_text(
            self._metadata_path(session_id, version),
            json.dumps([r.to_json_dict() for r in records], indent=2, ensure_ascii=False),
        )


def _read_bytes(path: Path) -> bytes | None:
    return path.read_bytes() if path.is_file() else None
