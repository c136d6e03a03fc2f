"""Shared fixtures for Pagecraft tests."""

from __future__ import annotations

import io
import zipfile
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import pytest_asyncio

from pagecraft.agent.engine import (
    EngineEvent,
    StepFinished,
    TextDelta,
    ToolCallRequest,
    ToolSpec,
)
from pagecraft.events.bus import EventBus, PagecraftEvent
from pagecraft.images import ImageLibrary, MockImageGenerator
from pagecraft.lifecycle import SessionLifecycle
from pagecraft.models.chat import ChatEntry, TokenUsage
from pagecraft.models.config import PagecraftConfig, StoreConfig
from pagecraft.models.files import DEFAULT_FILES
from pagecraft.store.layout import SessionLayout
from pagecraft.store.ledger import TurnLedger
from pagecraft.store.registry import SessionRegistry
from pagecraft.store.versions import VersionStore
from pagecraft.studio import PageStudio
from pagecraft.tokens.estimator import TokenEstimator

Step = list[EngineEvent] | Exception
Responder = Callable[[list[ChatEntry]], Step]


class ScriptedEngine:
    """
    Completion engine replaying pre-built steps.

    Each call to :meth:`stream` consumes the next scripted step. Once the
    script is exhausted, *responder* (if given) builds the step from the
    message list; otherwise the engine answers with plain text and no tool
    calls. An ``Exception`` in place of a step is raised mid-stream.
    """

    def __init__(self, steps: list[Step] | None = None, responder: Responder | None = None):
        self.steps: list[Step] = list(steps or [])
        self.responder = responder
        self.calls: list[dict[str, Any]] = []

    @property
    def model(self) -> str:
        return "scripted"

    async def stream(
        self,
        *,
        system_prompt: str,
        messages: list[ChatEntry],
        tools: list[ToolSpec],
    ) -> AsyncIterator[EngineEvent]:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "messages": list(messages),
                "tools": [t.name for t in tools],
            }
        )
        if self.steps:
            step = self.steps.pop(0)
        elif self.responder is not None:
            step = self.responder(messages)
        else:
            step = [TextDelta(text="Done.")]

        if isinstance(step, Exception):
            yield TextDelta(text="partial ")
            raise step
        for event in step:
            yield event
        yield StepFinished(usage=TokenUsage(input=100, output=20))


def call(tool_name: str, call_id: str | None = None, **arguments: Any) -> ToolCallRequest:
    """Helper to create a tool-call event."""
    return ToolCallRequest(
        tool_call_id=call_id or f"call_{tool_name}", tool_name=tool_name, input=arguments
    )


def zip_contents(data: bytes) -> dict[str, bytes]:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return {name: zf.read(name) for name in zf.namelist()}


def blue_background_steps() -> list[Step]:
    """One edit turning the default background blue, then a summary."""
    return [
        [
            TextDelta(text="Updating the background.\n"),
            call(
                "edit_file",
                file="styles.css",
                oldString="background-color: #f5f5f5;",
                newString="background-color: blue;",
                summary="Make background blue",
            ),
        ],
        [call("summary", message="The background is now blue.")],
    ]


@pytest.fixture
def config(tmp_path):
    """PagecraftConfig rooted in a temp directory."""
    return PagecraftConfig(store=StoreConfig(root_dir=str(tmp_path / "sessions")))


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[PagecraftEvent, dict[str, Any]]] = []

    def _collect(event: PagecraftEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


def statuses(bus: EventBus, session_id: str | None = None) -> list[dict[str, Any]]:
    """Return the chat.status payloads collected on *bus*, optionally for one session."""
    return [
        payload
        for event, payload in bus.collected  # type: ignore[attr-defined]
        if event == PagecraftEvent.CHAT_STATUS
        and (session_id is None or payload["session_id"] == session_id)
    ]


@pytest.fixture
def estimator():
    """TokenEstimator using heuristic only (no tiktoken required in tests)."""
    return TokenEstimator(heuristic_only=True)


@pytest.fixture
def layout(config):
    """SessionLayout over the temp session root."""
    lay = SessionLayout(config.store.resolved_root())
    lay.ensure_root()
    return lay


@pytest.fixture
def registry(layout):
    return SessionRegistry(layout)


@pytest.fixture
def versions(registry, event_bus):
    return VersionStore(registry, event_bus)


@pytest.fixture
def ledger(registry, event_bus):
    return TurnLedger(registry, event_bus)


@pytest_asyncio.fixture
async def lifecycle(registry, versions, ledger, event_bus):
    """SessionLifecycle; background tasks are awaited on teardown."""
    lc = SessionLifecycle(registry, versions, ledger, event_bus)
    yield lc
    await lc.wait_for_background()


@pytest.fixture
def images(layout):
    """ImageLibrary backed by the 1x1 PNG mock generator."""
    return ImageLibrary(layout, MockImageGenerator())


@pytest_asyncio.fixture
async def session_id(registry):
    """A pre-created session at version 0, turn 0."""
    session = await registry.create("page_TEST01")
    return session.id


@pytest_asyncio.fixture
async def make_studio(config, event_bus):
    """Factory building a PageStudio over the temp root with a given engine."""
    studios: list[PageStudio] = []

    async def _make(engine: Any = None, **overrides: Any) -> PageStudio:
        cfg = config.model_copy(update=overrides) if overrides else config
        studio = await PageStudio.create(
            cfg,
            engine=engine,
            image_generator=MockImageGenerator(),
            event_bus=event_bus,
        )
        studios.append(studio)
        return studio

    yield _make
    for studio in studios:
        await studio.close()


async def committed_turn(
    ledger: TurnLedger,
    versions: VersionStore,
    session_id: str,
    text: str,
    *,
    commit: bool = True,
) -> int:
    """Run one turn by hand: user entry, optional commit, assistant reply."""
    turn = await ledger.begin_turn(session_id, ChatEntry(role="user", content=text))
    if commit:
        target = await versions.init_next_version(session_id)
        files = DEFAULT_FILES.replace("styles.css", f"/* {text} */")
        await versions.commit_files(session_id, files, target)
        await ledger.seal_turn(session_id, target)
    await ledger.append_assistant_entries(
        session_id, [ChatEntry(role="assistant", content=f"done: {text}")]
    )
    return turn
