"""PageStudio: the public facade wiring the session store, agent loop and notifications."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import structlog

from pagecraft.agent.engine import CompletionEngine, create_engine
from pagecraft.agent.loop import AgentLoop
from pagecraft.archive import build_turn_archive
from pagecraft.chat import AttachmentInput, ChatService
from pagecraft.events.bus import EventBus, PagecraftEvent
from pagecraft.images import ImageGenerator, ImageLibrary, create_image_generator
from pagecraft.lifecycle import SessionLifecycle
from pagecraft.models.chat import ChatEntry, Selection
from pagecraft.models.config import PagecraftConfig
from pagecraft.models.files import FileSnapshot
from pagecraft.models.results import ChatResult, PendingSession, UndoResult
from pagecraft.models.session import Session
from pagecraft.store.layout import SessionLayout
from pagecraft.store.ledger import TurnLedger
from pagecraft.store.registry import SessionRegistry
from pagecraft.store.versions import VersionStore
from pagecraft.tokens.estimator import TokenEstimator


class PageStudio:
    """
    Versioned, branchable page-editing sessions driven by an LLM agent.

    One studio owns one session root directory. Sessions are cached in
    memory and written through to disk on every mutating call, so a new
    studio over the same root picks up where the last one stopped.

    Example::

        async with PageStudio.open(PagecraftConfig.from_env()) as studio:
            session = await studio.create_session()
            result = await studio.send(session.id, "Make the background blue")
            print(result.message, result.session.current_version)

    Progress and outcomes are published on :attr:`event_bus`::

        studio.subscribe(PagecraftEvent.CHAT_STATUS, lambda e, p: print(p["status"]))

    Set ``PAGECRAFT_MOCK_LLM=1`` to run without provider keys.
    """

    def __init__(
        self,
        config: PagecraftConfig,
        layout: SessionLayout,
        registry: SessionRegistry,
        versions: VersionStore,
        ledger: TurnLedger,
        lifecycle: SessionLifecycle,
        images: ImageLibrary,
        loop: AgentLoop,
        chat: ChatService,
        event_bus: EventBus,
    ) -> None:
        self._config = config
        self._layout = layout
        self._registry = registry
        self._versions = versions
        self._ledger = ledger
        self._lifecycle = lifecycle
        self._images = images
        self._loop = loop
        self._chat = chat
        self._event_bus = event_bus
        self._logger = structlog.get_logger("pagecraft.studio")

    @classmethod
    async def create(
        cls,
        config: PagecraftConfig | None = None,
        *,
        engine: CompletionEngine | None = None,
        image_generator: ImageGenerator | None = None,
        event_bus: EventBus | None = None,
    ) -> PageStudio:
        """
        Build a studio over ``config.store.root_dir``.

        Args:
            config: Studio configuration. Defaults to ``PagecraftConfig()``.
            engine: Completion engine override. By default one is selected
                from ``config.agent`` (mock, litellm, or none when no model
                is configured).
            image_generator: Image provider override.
            event_bus: Bus to publish on. A fresh one is created by default.

        Returns:
            A ready-to-use studio.
        """
        cfg = config or PagecraftConfig()
        bus = event_bus or EventBus()
        layout = SessionLayout(cfg.store.resolved_root())
        await asyncio.to_thread(layout.ensure_root)

        registry = SessionRegistry(
            layout,
            default_image_generation=cfg.images.default_allowed,
            group_count=cfg.branching.group_count,
        )
        versions = VersionStore(registry, bus)
        ledger = TurnLedger(registry, bus)
        lifecycle = SessionLifecycle(registry, versions, ledger, bus)
        images = ImageLibrary(layout, image_generator or create_image_generator(cfg.images))
        loop = AgentLoop(
            engine if engine is not None else create_engine(cfg.agent),
            versions,
            images,
            cfg.agent,
            cfg.branching,
            TokenEstimator(),
        )
        chat = ChatService(lifecycle, versions, ledger, loop, bus)

        structlog.get_logger("pagecraft.studio").info(
            "studio_opened", root=str(layout.root), model=cfg.agent.model
        )
        return cls(
            config=cfg,
            layout=layout,
            registry=registry,
            versions=versions,
            ledger=ledger,
            lifecycle=lifecycle,
            images=images,
            loop=loop,
            chat=chat,
            event_bus=bus,
        )

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        config: PagecraftConfig | None = None,
        *,
        engine: CompletionEngine | None = None,
        image_generator: ImageGenerator | None = None,
        event_bus: EventBus | None = None,
    ) -> AsyncGenerator[PageStudio, None]:
        """
        Create a studio and close it (awaiting background work) on exit.

        All parameters are identical to :meth:`create`.
        """
        studio = await cls.create(
            config, engine=engine, image_generator=image_generator, event_bus=event_bus
        )
        try:
            yield studio
        finally:
            await studio.close()

    async def close(self) -> None:
        """Wait for background work and async event handlers to settle."""
        await self._lifecycle.wait_for_background()
        await self._event_bus.drain()
        self._logger.info("studio_closed", root=str(self._layout.root))

    async def __aenter__(self) -> PageStudio:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ── Sessions ───────────────────────────────────────────────────────────────

    async def create_session(self, nonce: str = "default") -> Session:
        """Create a fresh session. Concurrent calls sharing *nonce* get the same one."""
        return await self._lifecycle.create(nonce)

    async def get_or_create(self, session_id: str) -> Session:
        return await self._lifecycle.get_or_create(session_id)

    async def get(self, session_id: str) -> Session:
        """Return a copy of the session. Raises ``SessionNotFoundError`` if unknown."""
        return await self._lifecycle.get(session_id)

    def begin_create(self) -> PendingSession:
        """Return a new id and group now; the session is created in the background."""
        return self._lifecycle.begin_create()

    async def delete(self, session_id: str) -> bool:
        return await self._lifecycle.delete(session_id)

    async def set_image_generation_allowed(self, session_id: str, allowed: bool) -> Session:
        return await self._lifecycle.set_image_generation_allowed(session_id, allowed)

    # ── Files and versions ─────────────────────────────────────────────────────

    async def read_current(self, session_id: str) -> FileSnapshot:
        """Snapshot-read of HEAD."""
        return await self._versions.read_current(session_id)

    async def read_snapshot(self, session_id: str, version: int) -> FileSnapshot:
        return await self._versions.read_snapshot(session_id, version)

    async def init_next_version(self, session_id: str) -> int:
        return await self._versions.init_next_version(session_id)

    async def commit_files(
        self, session_id: str, files: FileSnapshot, version: int
    ) -> Session:
        return await self._versions.commit_files(session_id, files, version)

    async def edit_historical_file(
        self, session_id: str, version: int, file: str, content: str
    ) -> FileSnapshot:
        """Overwrite one file of any version in place, HEAD included."""
        return await self._versions.edit_historical_file(session_id, version, file, content)

    async def resolve_asset(self, session_id: str, turn: int, filename: str) -> Path | None:
        """
        Map a turn and a filename to a file inside that turn's version directory.

        Returns:
            The path, or None if the file does not exist.

        Raises:
            TurnNotFoundError: If *turn* is unknown.
            ValueError: If *filename* is not a plain file name.
        """
        version = await self._ledger.resolve_version_for_turn(session_id, turn)
        path = self._layout.asset_path(session_id, version, filename)
        exists = await asyncio.to_thread(path.is_file)
        return path if exists else None

    async def export_turn_archive(self, session_id: str, turn: int) -> bytes:
        """Zip the page files and images of the version *turn* resolves to."""
        version = await self._ledger.resolve_version_for_turn(session_id, turn)
        files = await self._versions.read_snapshot(session_id, version)
        assets: list[tuple[str, bytes]] = []
        for record in await self._images.list_images(session_id, version):
            data = await self._images.read_image(session_id, version, record.filename)
            if data is not None:
                assets.append((record.filename, data))
        return build_turn_archive(files, assets)

    # ── Turns and history ──────────────────────────────────────────────────────

    async def get_history(self, session_id: str) -> list[ChatEntry]:
        return await self._ledger.history(session_id)

    async def get_history_for_turn(self, session_id: str, turn: int) -> list[ChatEntry]:
        """History entries with ``turn <= turn``."""
        return await self._ledger.history_for_turn(session_id, turn)

    async def resolve_version_for_turn(self, session_id: str, turn: int) -> int:
        return await self._ledger.resolve_version_for_turn(session_id, turn)

    async def undo_last_turn(self, session_id: str) -> UndoResult:
        return await self._ledger.undo_last_turn(session_id)

    # ── Branching ──────────────────────────────────────────────────────────────

    async def clone(self, session_id: str) -> Session:
        return await self._lifecycle.clone(session_id)

    async def clone_at_turn(self, session_id: str, turn: int) -> Session:
        return await self._lifecycle.clone_at_turn(session_id, turn)

    async def clone_at_version(self, session_id: str, version: int) -> Session:
        return await self._lifecycle.clone_at_version(session_id, version)

    async def begin_clone_at_turn(self, session_id: str, turn: int) -> PendingSession:
        return await self._lifecycle.begin_clone_at_turn(session_id, turn)

    # ── Chat ───────────────────────────────────────────────────────────────────

    async def send(
        self,
        session_id: str,
        message: str,
        *,
        selection: Selection | str | None = None,
        attachments: Sequence[AttachmentInput] | None = None,
        allow_variants: bool = True,
    ) -> ChatResult:
        """
        Run one user instruction against *session_id*.

        Args:
            session_id: Target session; created if unknown.
            message: Natural-language instruction.
            selection: Picked element, as a :class:`Selection` or a CSS selector.
            attachments: Element screenshots, as :class:`ScreenshotAttachment`
                models or ``{"type": "screenshot", "selector", "dataUrl"}`` dicts.
            allow_variants: Whether the model may fan the page out into variants.
        """
        if isinstance(selection, str):
            selection = Selection(selector=selection)
        return await self._chat.handle_user_message(
            session_id,
            message,
            selection=selection,
            attachments=attachments,
            allow_variants=allow_variants,
        )

    async def wait_for_background(self) -> None:
        """Await background creations, clones and variant turns."""
        await self._lifecycle.wait_for_background()

    # ── Properties ─────────────────────────────────────────────────────────────

    @property
    def config(self) -> PagecraftConfig:
        return self._config

    @property
    def event_bus(self) -> EventBus:
        """The bus ``chat.status`` and ``session.created`` are published on."""
        return self._event_bus

    @property
    def versions(self) -> VersionStore:
        return self._versions

    @property
    def ledger(self) -> TurnLedger:
        return self._ledger

    @property
    def lifecycle(self) -> SessionLifecycle:
        return self._lifecycle

    def subscribe(self, event: PagecraftEvent, handler: Any) -> None:
        """Convenience wrapper for ``studio.event_bus.subscribe()``."""
        self._event_bus.subscribe(event, handler)
