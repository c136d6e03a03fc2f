"""Agent orchestration: completion engines, tools, progress and the step loop."""

from pagecraft.agent.engine import (
    CompletionEngine,
    EngineEvent,
    LiteLLMEngine,
    MockCompletionEngine,
    StepFinished,
    TextDelta,
    ToolCallRequest,
    ToolResultEvent,
    ToolSpec,
    create_engine,
)
from pagecraft.agent.loop import AgentLoop, AgentRequest, order_tool_results
from pagecraft.agent.progress import LineBuffer, ProgressChannel
from pagecraft.agent.prompts import build_system_prompt
from pagecraft.agent.tools import (
    AmbiguousMatchError,
    MatchNotFoundError,
    ToolCatalog,
    ToolError,
    TurnState,
    apply_edit,
)

__all__ = [
    "AgentLoop",
    "AgentRequest",
    "AmbiguousMatchError",
    "CompletionEngine",
    "EngineEvent",
    "LineBuffer",
    "LiteLLMEngine",
    "MatchNotFoundError",
    "MockCompletionEngine",
    "ProgressChannel",
    "StepFinished",
    "TextDelta",
    "ToolCallRequest",
    "ToolCatalog",
    "ToolError",
    "ToolResultEvent",
    "ToolSpec",
    "TurnState",
    "apply_edit",
    "build_system_prompt",
    "create_engine",
    "order_tool_results",
]
