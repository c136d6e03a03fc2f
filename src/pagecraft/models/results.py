"""Result types returned by the agent loop, the ledger and the chat service."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field

from pagecraft.models.chat import ChatEntry, Selection, TokenUsage
from pagecraft.models.files import FileSnapshot
from pagecraft.models.session import Session


class AgentOutcome(StrEnum):
    """Terminal state of one :class:`~pagecraft.agent.loop.AgentLoop` run."""

    SUMMARY_PRODUCED = "summary_produced"
    VARIANTS_REQUESTED = "variants_requested"
    NO_MORE_TOOL_CALLS = "no_more_tool_calls"
    STEP_LIMIT_REACHED = "step_limit_reached"
    FAILED = "failed"


class VariantRequest(BaseModel):
    """A model request to fan the current page out into sibling sessions."""

    count: int = Field(ge=1)
    instructions: list[str] = Field(default_factory=list)

    def instruction_for(self, index: int, fallback: str) -> str:
        """Return the instruction for sibling *index*, or *fallback* if the model gave none."""
        if index < len(self.instructions) and self.instructions[index].strip():
            return self.instructions[index].strip()
        return fallback


class AgentResult(BaseModel):
    """
    The result of a single agent loop run.

    ``target_version`` is set only when at least one mutating tool ran. The
    caller commits ``files`` to it with ``VersionStore.commit_files`` or
    skips committing entirely when it is ``None``.
    """

    outcome: AgentOutcome
    summary: str
    files: FileSnapshot
    variant_request: VariantRequest | None = None
    new_entries: list[ChatEntry] = Field(default_factory=list)
    target_version: int | None = None
    steps: int = 0
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    error: str | None = None


class UndoResult(BaseModel):
    """UI state to restore after ``TurnLedger.undo_last_turn``."""

    session_id: str
    undone_turn: int
    current_version: int
    last_turn: int
    restored_selection: Selection | None = None
    restored_input: str | None = None


class ChatResult(BaseModel):
    """The result of ``ChatService.handle_user_message``."""

    message: str
    session: Session
    outcome: AgentOutcome | None = None
    """None when the message was skipped before the loop ran."""
    variant_session_ids: list[str] = Field(default_factory=list)


class PendingSession(BaseModel):
    """Returned synchronously by background create / clone; hydration continues later."""

    id: str
    group: int
    current_version: int = 0
    current_turn: int = 0
