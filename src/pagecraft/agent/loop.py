"""The agent loop: a bounded step machine over a completion engine and the tool catalog."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from pagecraft.agent.engine import (
    CompletionEngine,
    StepFinished,
    TextDelta,
    ToolCallRequest,
    ToolResultEvent,
)
from pagecraft.agent.progress import ProgressChannel, ProgressSink
from pagecraft.agent.prompts import build_system_prompt
from pagecraft.agent.tools import ToolCatalog, TurnState
from pagecraft.images import ImageLibrary
from pagecraft.models.chat import (
    ChatEntry,
    ContentPart,
    ImagePart,
    ScreenshotAttachment,
    TextPart,
    TokenUsage,
    ToolCallPart,
    ToolResultPart,
)
from pagecraft.models.config import AgentConfig, BranchConfig
from pagecraft.models.files import FileSnapshot
from pagecraft.models.results import AgentOutcome, AgentResult
from pagecraft.store.errors import PagecraftStoreError
from pagecraft.store.versions import VersionStore
from pagecraft.tokens.estimator import TokenEstimator

NOT_CONFIGURED_SUMMARY = (
    "API key not configured. Returning existing files without modifications. "
    "Configure a model (PAGECRAFT_MODEL) and its provider API key."
)
DEFAULT_SUMMARY = "Changes applied."


class AgentRequest(BaseModel):
    """Inputs of one :meth:`AgentLoop.run`."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str
    instructions: str
    """Already enriched with any selected-element context."""
    files: FileSnapshot
    conversation: list[ChatEntry] = Field(default_factory=list)
    """Context log without the entry for *instructions*."""
    attachments: list[ScreenshotAttachment] = Field(default_factory=list)
    """Screenshots sent to the model as images alongside *instructions*."""
    current_version: int = 0
    image_generation_allowed: bool = True
    allow_variants: bool = True
    on_progress: ProgressSink | None = None


def order_tool_results(
    calls: Sequence[ToolCallRequest], results: Sequence[ToolResultPart]
) -> list[ToolResultPart]:
    """Sort *results* into the order their calls were issued; unknown ids go last."""
    position = {call.tool_call_id: index for index, call in enumerate(calls)}
    return sorted(results, key=lambda r: position.get(r.tool_call_id, len(position)))


class AgentLoop:
    """
    Runs one turn of tool calls against a working copy of the page.

    Each step streams one completion from the engine, then executes the
    requested tools in call order. The loop stops when:

    - a step requests no tools (``NO_MORE_TOOL_CALLS``),
    - ``summary`` runs (``SUMMARY_PRODUCED``),
    - ``generate_variants`` runs (``VARIANTS_REQUESTED``),
    - ``max_steps`` is exhausted (``STEP_LIMIT_REACHED``), or
    - the engine raises (``FAILED``; the request's files come back untouched).

    The loop never commits. It reports the working copy and, if a mutating
    tool succeeded, the ``target_version`` the caller should commit it to.

    Example::

        loop = AgentLoop(engine, versions, images, AgentConfig(model="openai/gpt-4.1"))
        result = await loop.run(AgentRequest(session_id=sid, instructions="...", files=files))
        if result.target_version is not None:
            await versions.commit_files(sid, result.files, result.target_version)
    """

    def __init__(
        self,
        engine: CompletionEngine | None,
        versions: VersionStore,
        images: ImageLibrary,
        config: AgentConfig | None = None,
        branching: BranchConfig | None = None,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._engine = engine
        self._versions = versions
        self._images = images
        self._config = config or AgentConfig()
        self._branching = branching or BranchConfig()
        self._estimator = estimator or TokenEstimator()

    async def run(self, request: AgentRequest) -> AgentResult:
        logger = structlog.get_logger("pagecraft.agent").bind(session_id=request.session_id)

        if self._engine is None:
            logger.warning("engine_not_configured")
            return AgentResult(
                outcome=AgentOutcome.FAILED,
                summary=NOT_CONFIGURED_SUMMARY,
                files=request.files,
                error="not_configured",
            )

        state = TurnState(
            session_id=request.session_id,
            files=request.files,
            current_version=request.current_version,
            image_generation_allowed=request.image_generation_allowed,
            allow_variants=request.allow_variants,
        )
        catalog = ToolCatalog(state, self._versions, self._images, self._branching)
        system_prompt = build_system_prompt(
            image_generation_allowed=request.image_generation_allowed,
            allow_variants=request.allow_variants,
        )
        prompt: str | list[ContentPart] = request.instructions
        if request.attachments:
            prompt = [
                TextPart(text=request.instructions),
                *(ImagePart(image=a.data_url) for a in request.attachments),
            ]
        messages = [*request.conversation, ChatEntry(role="user", content=prompt)]
        new_entries: list[ChatEntry] = []
        tokens = TokenUsage()
        full_text = ""
        outcome = AgentOutcome.STEP_LIMIT_REACHED
        step = 0

        try:
            async with ProgressChannel(request.on_progress) as progress:
                while step < self._config.max_steps:
                    step += 1
                    step_text = ""
                    calls: list[ToolCallRequest] = []
                    provided: list[ToolResultPart] = []
                    usage = TokenUsage()

                    async for event in self._engine.stream(
                        system_prompt=system_prompt,
                        messages=messages,
                        tools=catalog.specs(),
                    ):
                        if isinstance(event, TextDelta):
                            step_text += event.text
                            await progress.send(event.text)
                        elif isinstance(event, ToolCallRequest):
                            calls.append(event)
                            await progress.send(f"{catalog.progress_label(event)}\n")
                        elif isinstance(event, ToolResultEvent):
                            provided.append(
                                ToolResultPart(
                                    tool_call_id=event.tool_call_id,
                                    tool_name=event.tool_name,
                                    output=event.output,
                                )
                            )
                        elif isinstance(event, StepFinished):
                            usage = event.usage

                    if not usage.effective_total():
                        usage = self._estimate_usage(system_prompt, messages, step_text)
                    tokens = tokens + usage
                    full_text += step_text
                    self._log_usage(logger, step, usage)

                    assistant_parts: list[ContentPart] = []
                    if step_text:
                        assistant_parts.append(TextPart(text=step_text))
                    assistant_parts.extend(
                        ToolCallPart(
                            tool_call_id=c.tool_call_id, tool_name=c.tool_name, input=c.input
                        )
                        for c in calls
                    )
                    if assistant_parts:
                        entry = ChatEntry(role="assistant", content=assistant_parts)
                        messages.append(entry)
                        new_entries.append(entry)

                    if not calls:
                        outcome = AgentOutcome.NO_MORE_TOOL_CALLS
                        break

                    results = await self._execute(catalog, calls, provided)
                    tool_entry = ChatEntry(role="tool", content=list(results))
                    messages.append(tool_entry)
                    new_entries.append(tool_entry)

                    if state.variant_request is not None:
                        outcome = AgentOutcome.VARIANTS_REQUESTED
                        break
                    if state.stop_requested:
                        outcome = AgentOutcome.SUMMARY_PRODUCED
                        break
        except PagecraftStoreError:
            raise
        except Exception as exc:
            logger.error("completion_failed", step=step, error=str(exc))
            return AgentResult(
                outcome=AgentOutcome.FAILED,
                summary=f"Could not get a model response: {exc}. Previous version kept.",
                files=request.files,
                steps=step,
                tokens=tokens,
                error=str(exc),
            )

        summary = state.summary or full_text.strip() or DEFAULT_SUMMARY
        files = state.files
        target_version = state.target_version if state.mutations > 0 else None
        if outcome is AgentOutcome.STEP_LIMIT_REACHED:
            logger.warning("step_limit_reached", steps=step, mutations=state.mutations)
            if not self._config.commit_on_step_limit:
                files, target_version = request.files, None

        logger.info(
            "agent_loop_finished",
            outcome=str(outcome),
            steps=step,
            mutations=state.mutations,
            target_version=target_version,
            total_tokens=tokens.effective_total(),
        )
        return AgentResult(
            outcome=outcome,
            summary=summary,
            files=files,
            variant_request=state.variant_request,
            new_entries=new_entries,
            target_version=target_version,
            steps=step,
            tokens=tokens,
        )

    async def _execute(
        self,
        catalog: ToolCatalog,
        calls: list[ToolCallRequest],
        provided: list[ToolResultPart],
    ) -> list[ToolResultPart]:
        """Run every call the engine did not already execute, sequentially in call order."""
        done = {r.tool_call_id for r in provided}
        results = list(provided)
        for call in calls:
            if call.tool_call_id in done:
                continue
            output = await catalog.execute(call)
            results.append(
                ToolResultPart(
                    tool_call_id=call.tool_call_id, tool_name=call.tool_name, output=output
                )
            )
        return order_tool_results(calls, results)

    def _log_usage(self, logger: Any, step: int, usage: TokenUsage) -> None:
        used = usage.effective_total()
        limit = self._config.max_context_tokens
        logger.info(
            "step_token_usage",
            step=step,
            model=self._engine.model if self._engine is not None else None,
            input_tokens=usage.input,
            output_tokens=usage.output,
            cached_tokens=usage.cache_read,
            total_tokens=used,
            context_used_pct=round(used / limit * 100, 1),
        )

    def _estimate_usage(
        self, system_prompt: str, messages: list[ChatEntry], output_text: str
    ) -> TokenUsage:
        """Fallback when the provider reports no usage for a step."""
        model = self._engine.model if self._engine is not None else None
        prompt = self._estimator.estimate_prompt(system_prompt, messages, model)
        return TokenUsage(input=prompt, output=self._estimator.estimate(output_text, model))
