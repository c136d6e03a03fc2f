"""
Pagecraft: versioned, branchable page-editing sessions driven by an LLM tool loop.

Primary entry point::

    from pagecraft import PageStudio, PagecraftConfig

    async with PageStudio.open(PagecraftConfig.from_env()) as studio:
        session = await studio.create_session()
        result = await studio.send(session.id, "Make the background blue")
        print(result.message)
"""

from pagecraft.studio import PageStudio
from pagecraft.lifecycle import SessionLifecycle, make_id
from pagecraft.chat import ChatService
from pagecraft.branching import BranchCoordinator
from pagecraft.archive import build_turn_archive
from pagecraft.models import (
    PagecraftConfig,
    AgentConfig,
    BranchConfig,
    ImageConfig,
    StoreConfig,
    FileSnapshot,
    DEFAULT_FILES,
    ChatEntry,
    ScreenshotAttachment,
    Selection,
    Session,
    AgentOutcome,
    AgentResult,
    ChatResult,
    PendingSession,
    UndoResult,
    VariantRequest,
)
from pagecraft.events.bus import EventBus, PagecraftEvent
from pagecraft.agent import AgentLoop, AgentRequest, CompletionEngine, create_engine
from pagecraft.store import PagecraftStoreError, TurnLedger, VersionStore
from pagecraft.tokens.estimator import TokenEstimator

__version__ = "0.1.0"

__all__ = [
    # Core
    "PageStudio",
    "make_id",
    "SessionLifecycle",
    "ChatService",
    "BranchCoordinator",
    "build_turn_archive",
    # Config
    "PagecraftConfig",
    "AgentConfig",
    "BranchConfig",
    "ImageConfig",
    "StoreConfig",
    # Models
    "FileSnapshot",
    "DEFAULT_FILES",
    "ChatEntry",
    "ScreenshotAttachment",
    "Selection",
    "Session",
    "AgentOutcome",
    "AgentResult",
    "ChatResult",
    "PendingSession",
    "UndoResult",
    "VariantRequest",
    # Store
    "PagecraftStoreError",
    "TurnLedger",
    "VersionStore",
    # Agent
    "AgentLoop",
    "AgentRequest",
    "CompletionEngine",
    "create_engine",
    # Events
    "EventBus",
    "PagecraftEvent",
    # Utilities
    "TokenEstimator",
]
