"""Chat log entries, structured content parts and tool outputs."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for models persisted as camelCase JSON (``createdAt``, ``toolCallId``)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Dump to a JSON-safe dict using the on-disk (camelCase) keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def utcnow() -> datetime:
    return datetime.now(UTC)


# ── Tool outputs ───────────────────────────────────────────────────────────────


class TextOutput(CamelModel):
    """Plain-text tool result."""

    type: Literal["text"] = "text"
    value: str


class JsonOutput(CamelModel):
    """Structured tool result (e.g. an image listing)."""

    type: Literal["json"] = "json"
    value: Any


class ErrorOutput(CamelModel):
    """A tool failed. The text is shown to the model so it can retry."""

    type: Literal["error"] = "error"
    value: str


ToolOutput = Annotated[TextOutput | JsonOutput | ErrorOutput, Field(discriminator="type")]


def output_text(output: TextOutput | JsonOutput | ErrorOutput) -> str:
    """Render a tool output as the string handed back to the completion engine."""
    if isinstance(output, JsonOutput):
        return json.dumps(output.value, ensure_ascii=False)
    if isinstance(output, ErrorOutput):
        return f"Error: {output.value}"
    return output.value


# ── Content parts ──────────────────────────────────────────────────────────────


class TextPart(CamelModel):
    """A plain text segment of a message."""

    type: Literal["text"] = "text"
    text: str


class ToolCallPart(CamelModel):
    """A tool call issued by the model, in the order the model issued it."""

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(CamelModel):
    """The result of executing one tool call."""

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: ToolOutput


class ImagePart(CamelModel):
    """An image sent to the model with a user message, as a data URL."""

    type: Literal["image"] = "image"
    image: str


ContentPart = Annotated[
    TextPart | ImagePart | ToolCallPart | ToolResultPart, Field(discriminator="type")
]


# ── Entries ────────────────────────────────────────────────────────────────────


class Selection(CamelModel):
    """A page element previously picked by the user."""

    selector: str


class ScreenshotAttachment(CamelModel):
    """A screenshot of a picked page element, sent along with a message."""

    type: Literal["screenshot"] = "screenshot"
    selector: str
    data_url: str
    id: str | None = None


Role = Literal["user", "assistant", "system", "tool"]


class ChatEntry(CamelModel):
    """
    One entry of a session's history or context log.

    ``content`` is either plain text or a list of structured parts. History
    (UI-facing) entries always carry plain text; context entries keep the
    structured tool-call / tool-result parts the completion engine produced.
    """

    role: Role
    content: str | list[ContentPart]
    turn: int = Field(default=0, ge=0)
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    selection: Selection | None = None

    def ui_text(self) -> str:
        """Concatenate the visible text of this entry (tool parts are hidden)."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.text for part in self.content if isinstance(part, TextPart))

    def tagged(self, *, turn: int, version: int) -> ChatEntry:
        """Return a copy tagged with *turn* and *version*."""
        return self.model_copy(update={"turn": turn, "version": version})

    def for_history(self) -> ChatEntry:
        """Return the UI-facing copy of this entry (content rendered to text)."""
        return self.model_copy(update={"content": self.ui_text()})

    @property
    def visible_in_history(self) -> bool:
        """User entries are always shown; others only when they carry visible text."""
        return self.role == "user" or bool(self.ui_text().strip())


# ── Token Usage ────────────────────────────────────────────────────────────────


class TokenUsage(BaseModel):
    """Token counts reported by the completion engine for one step, or a whole turn."""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    total: int = 0

    def effective_total(self) -> int:
        """Return total, computing from parts when the explicit total is zero."""
        if self.total:
            return self.total
        return self.input + self.output

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            cache_read=self.cache_read + other.cache_read,
            total=self.effective_total() + other.effective_total(),
        )
