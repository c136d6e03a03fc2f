"""
Completion engines: the pluggable model capability driven by the agent loop.

An engine receives a system prompt, the message list and the tool catalog,
and yields a stream of events for ONE step: text deltas, tool-call requests,
optionally tool results it executed itself, and a final usage report.
Exactly one implementation is selected at startup by :func:`create_engine`.
"""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator
from typing import Any, Literal, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

from pagecraft.models.chat import (
    ChatEntry,
    ImagePart,
    TextPart,
    TokenUsage,
    ToolCallPart,
    ToolOutput,
    ToolResultPart,
    output_text,
)
from pagecraft.models.config import MOCK_ENV_VAR, AgentConfig
from pagecraft.tokens.estimator import TokenEstimator

# ── Stream events ──────────────────────────────────────────────────────────────


class TextDelta(BaseModel):
    """Incremental assistant text."""

    type: Literal["text-delta"] = "text-delta"
    text: str


class ToolCallRequest(BaseModel):
    """The model asked for a tool to run."""

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultEvent(BaseModel):
    """A tool call the engine (or provider) already executed."""

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: ToolOutput


class StepFinished(BaseModel):
    """End of the step, with the provider's usage report."""

    type: Literal["step-finished"] = "step-finished"
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: str = "stop"


EngineEvent = TextDelta | ToolCallRequest | ToolResultEvent | StepFinished


class ToolSpec(BaseModel):
    """A tool as advertised to the model."""

    name: str
    description: str
    parameters: dict[str, Any]

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@runtime_checkable
class CompletionEngine(Protocol):
    """Streams one completion step."""

    @property
    def model(self) -> str: ...

    def stream(
        self,
        *,
        system_prompt: str,
        messages: list[ChatEntry],
        tools: list[ToolSpec],
    ) -> AsyncIterator[EngineEvent]: ...


# ── litellm ────────────────────────────────────────────────────────────────────


def to_openai_messages(entries: list[ChatEntry]) -> list[dict[str, Any]]:
    """Convert chat entries (plain or structured) into OpenAI-format messages."""
    messages: list[dict[str, Any]] = []
    for entry in entries:
        if isinstance(entry.content, str):
            messages.append({"role": entry.role, "content": entry.content})
            continue

        text = "\n".join(p.text for p in entry.content if isinstance(p, TextPart))
        calls = [p for p in entry.content if isinstance(p, ToolCallPart)]
        results = [p for p in entry.content if isinstance(p, ToolResultPart)]
        images = [p for p in entry.content if isinstance(p, ImagePart)]

        if entry.role == "assistant":
            message: dict[str, Any] = {"role": "assistant", "content": text or None}
            if calls:
                message["tool_calls"] = [
                    {
                        "id": call.tool_call_id,
                        "type": "function",
                        "function": {
                            "name": call.tool_name,
                            "arguments": json.dumps(call.input, ensure_ascii=False),
                        },
                    }
                    for call in calls
                ]
            messages.append(message)
        elif results:
            for result in results:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.tool_call_id,
                        "content": output_text(result.output),
                    }
                )
        elif images:
            parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
            parts.extend({"type": "image_url", "image_url": {"url": p.image}} for p in images)
            messages.append({"role": entry.role, "content": parts})
        else:
            messages.append({"role": entry.role, "content": text})
    return messages


class LiteLLMEngine:
    """
    Completion engine backed by ``litellm.acompletion(stream=True)``.

    Tool-call fragments arrive spread over many chunks, keyed by index; they
    are accumulated and emitted as complete :class:`ToolCallRequest` events
    in index order once the stream ends.
    """

    def __init__(self, config: AgentConfig) -> None:
        if not config.model:
            raise ValueError("LiteLLMEngine requires AgentConfig.model")
        self._config = config
        self._model: str = config.model
        self._logger = structlog.get_logger("pagecraft.agent")

    @property
    def model(self) -> str:
        return self._model

    async def stream(
        self,
        *,
        system_prompt: str,
        messages: list[ChatEntry],
        tools: list[ToolSpec],
    ) -> AsyncIterator[EngineEvent]:
        import litellm

        call_kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                *to_openai_messages(messages),
            ],
            "stream": True,
            "stream_options": {"include_usage": True},
            "max_tokens": self._config.max_output_tokens,
        }
        if tools:
            call_kwargs["tools"] = [t.to_openai() for t in tools]
        if self._config.temperature is not None:
            call_kwargs["temperature"] = self._config.temperature

        pending_calls: dict[int, dict[str, str]] = {}
        usage = TokenUsage()
        finish_reason = "stop"

        async for chunk in await litellm.acompletion(**call_kwargs):
            choice = chunk.choices[0] if chunk.choices else None
            delta = choice.delta if choice is not None else None

            if delta is not None:
                if delta.content:
                    yield TextDelta(text=delta.content)
                for fragment in getattr(delta, "tool_calls", None) or []:
                    index = fragment.index if fragment.index is not None else len(pending_calls)
                    slot = pending_calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
                    if fragment.id:
                        slot["id"] = fragment.id
                    function = fragment.function
                    if function is not None:
                        if function.name:
                            slot["name"] = function.name
                        if function.arguments:
                            slot["arguments"] += function.arguments

            if choice is not None and choice.finish_reason:
                finish_reason = choice.finish_reason

            # Usage (usually in last chunk)
            if hasattr(chunk, "usage") and chunk.usage:
                details = getattr(chunk.usage, "prompt_tokens_details", None)
                usage = TokenUsage(
                    input=getattr(chunk.usage, "prompt_tokens", 0) or 0,
                    output=getattr(chunk.usage, "completion_tokens", 0) or 0,
                    cache_read=getattr(details, "cached_tokens", 0) or 0,
                    total=getattr(chunk.usage, "total_tokens", 0) or 0,
                )

        for index in sorted(pending_calls):
            slot = pending_calls[index]
            yield ToolCallRequest(
                tool_call_id=slot["id"] or f"call_{index}",
                tool_name=slot["name"],
                input=self._parse_arguments(slot["name"], slot["arguments"]),
            )
        yield StepFinished(usage=usage, finish_reason=finish_reason)

    def _parse_arguments(self, tool_name: str, raw: str) -> dict[str, Any]:
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            self._logger.warning("tool_arguments_unparseable", tool=tool_name, raw=raw[:200])
            return {}
        return parsed if isinstance(parsed, dict) else {}


# ── Mock ───────────────────────────────────────────────────────────────────────


class MockCompletionEngine:
    """
    Deterministic offline engine (``PAGECRAFT_MOCK_LLM=1``).

    First step reads ``index.html``; once a tool result is in the message
    list it finishes with a ``summary`` echoing the instruction.
    """

    def __init__(self, estimator: TokenEstimator | None = None) -> None:
        self._estimator = estimator or TokenEstimator()
        self._counter = 0

    @property
    def model(self) -> str:
        return "mock"

    async def stream(
        self,
        *,
        system_prompt: str,
        messages: list[ChatEntry],
        tools: list[ToolSpec],
    ) -> AsyncIterator[EngineEvent]:
        last_user = next(
            (m.ui_text() for m in reversed(messages) if m.role == "user"),
            "Hello",
        )
        self._counter += 1
        call_id = f"mock_call_{self._counter}"

        if messages and messages[-1].role == "tool":
            text = f"[Mock LLM response to: {last_user[:100]}]\n"
            for word in text.split(" "):
                yield TextDelta(text=word + " ")
            yield ToolCallRequest(
                tool_call_id=call_id,
                tool_name="summary",
                input={
                    "message": (
                        f"[Mock] Received: {last_user[:100]}. "
                        f"Set {MOCK_ENV_VAR}=0 and configure a model to edit the page."
                    )
                },
            )
        else:
            yield ToolCallRequest(
                tool_call_id=call_id,
                tool_name="read_file",
                input={"file": "index.html", "summary": "Reading the current page"},
            )

        yield StepFinished(
            usage=TokenUsage(
                input=self._estimator.estimate_prompt(system_prompt, messages),
                output=self._estimator.estimate(last_user),
            )
        )


def create_engine(config: AgentConfig) -> CompletionEngine | None:
    """
    Select the completion engine for this process.

    Returns the mock engine when ``PAGECRAFT_MOCK_LLM=1``, a
    :class:`LiteLLMEngine` when a model is configured, and None otherwise
    (the loop then answers with a fallback summary).
    """
    if os.environ.get(MOCK_ENV_VAR) == "1":
        return MockCompletionEngine()
    if config.model:
        return LiteLLMEngine(config)
    return None

