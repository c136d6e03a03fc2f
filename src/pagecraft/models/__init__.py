"""Pagecraft data models."""

from pagecraft.models.chat import (
    ChatEntry,
    ContentPart,
    ErrorOutput,
    ImagePart,
    JsonOutput,
    ScreenshotAttachment,
    Selection,
    TextOutput,
    TextPart,
    TokenUsage,
    ToolCallPart,
    ToolOutput,
    ToolResultPart,
)
from pagecraft.models.config import (
    AgentConfig,
    BranchConfig,
    ImageConfig,
    PagecraftConfig,
    StoreConfig,
)
from pagecraft.models.files import DEFAULT_FILES, FILE_KEYS, FileKey, FileSnapshot
from pagecraft.models.results import (
    AgentOutcome,
    AgentResult,
    ChatResult,
    PendingSession,
    UndoResult,
    VariantRequest,
)
from pagecraft.models.session import Session

__all__ = [
    # Config
    "AgentConfig",
    "BranchConfig",
    "ImageConfig",
    "PagecraftConfig",
    "StoreConfig",
    # Files
    "DEFAULT_FILES",
    "FILE_KEYS",
    "FileKey",
    "FileSnapshot",
    # Chat
    "ChatEntry",
    "ContentPart",
    "ErrorOutput",
    "ImagePart",
    "JsonOutput",
    "ScreenshotAttachment",
    "Selection",
    "TextOutput",
    "TextPart",
    "TokenUsage",
    "ToolCallPart",
    "ToolOutput",
    "ToolResultPart",
    # Session
    "Session",
    # Results
    "AgentOutcome",
    "AgentResult",
    "ChatResult",
    "PendingSession",
    "UndoResult",
    "VariantRequest",
]
