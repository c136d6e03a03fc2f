"""The user-message path: one instruction in, one turn (and maybe one version) out."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from pydantic import ValidationError

from pagecraft.agent.loop import AgentLoop, AgentRequest
from pagecraft.branching import BranchCoordinator
from pagecraft.events.bus import EventBus, PagecraftEvent
from pagecraft.events.payloads import ChatStatus
from pagecraft.lifecycle import SessionLifecycle
from pagecraft.models.chat import ChatEntry, ScreenshotAttachment, Selection
from pagecraft.models.results import AgentOutcome, ChatResult, VariantRequest
from pagecraft.store.ledger import TurnLedger
from pagecraft.store.versions import VersionStore

EMPTY_MESSAGE = "Message is empty. No changes applied."

AttachmentInput = ScreenshotAttachment | dict[str, Any]


def normalize_attachments(
    attachments: Sequence[AttachmentInput] | None,
) -> list[ScreenshotAttachment]:
    """Keep screenshots carrying both a selector and image data, trimmed."""
    kept: list[ScreenshotAttachment] = []
    for item in attachments or ():
        try:
            shot = ScreenshotAttachment.model_validate(item)
        except ValidationError as exc:
            structlog.get_logger("pagecraft.chat").warning(
                "attachment_dropped", error=str(exc)
            )
            continue
        selector, data_url = shot.selector.strip(), shot.data_url.strip()
        if not selector or not data_url:
            continue
        kept.append(
            shot.model_copy(
                update={
                    "selector": selector,
                    "data_url": data_url,
                    "id": shot.id.strip() if shot.id else None,
                }
            )
        )
    return kept


def compose_user_content(text: str, attachments: list[ScreenshotAttachment]) -> str:
    """Append one ``[Attachment N: screenshot <selector>]`` line per attachment."""
    lines = "\n".join(
        f"[Attachment {index}: {a.type} {a.selector}]"
        for index, a in enumerate(attachments, start=1)
    )
    if not lines:
        return text
    return f"{text}\n\n{lines}" if text else lines


class ChatService:
    """
    Runs user instructions against sessions.

    For each instruction the service opens a turn, runs the agent loop on
    the current page, commits the working copy when a mutating tool ran,
    and merges the model's output into the history and context logs.
    Progress and outcome are published as ``chat.status`` events.

    A variant request short-circuits the commit: the
    :class:`~pagecraft.branching.BranchCoordinator` clones the session into
    siblings that each re-enter :meth:`handle_user_message` with variants
    disabled.
    """

    def __init__(
        self,
        lifecycle: SessionLifecycle,
        versions: VersionStore,
        ledger: TurnLedger,
        loop: AgentLoop,
        event_bus: EventBus,
    ) -> None:
        self._lifecycle = lifecycle
        self._versions = versions
        self._ledger = ledger
        self._loop = loop
        self._bus = event_bus
        self._branching = BranchCoordinator(lifecycle, self._run_variant)

    async def handle_user_message(
        self,
        session_id: str,
        message: str,
        *,
        selection: Selection | None = None,
        attachments: Sequence[AttachmentInput] | None = None,
        allow_variants: bool = True,
    ) -> ChatResult:
        """
        Process one user instruction.

        Unknown session ids are created on the fly. A blank message with
        neither a selection nor a usable attachment is skipped and opens no
        turn.

        Args:
            session_id: Target session.
            message: The user's natural-language instruction.
            selection: Page element the user picked, if any.
            attachments: Element screenshots. Invalid entries are dropped.
            allow_variants: Whether ``generate_variants`` is offered.

        Returns:
            The summary, the updated session and the loop outcome.

        Raises:
            PagecraftStoreError: Storage failures, after an ``error`` status.
        """
        logger = structlog.get_logger("pagecraft.chat").bind(session_id=session_id)
        text = message.strip()
        session = await self._lifecycle.get_or_create(session_id)

        shots = normalize_attachments(attachments)

        if not text and not shots and selection is None:
            self._status(session_id, "skipped", EMPTY_MESSAGE)
            return ChatResult(message=EMPTY_MESSAGE, session=session)

        try:
            content = compose_user_content(text, shots)
            user_entry = ChatEntry(role="user", content=content, selection=selection)
            context_entry = user_entry
            instructions = text
            if selection is not None:
                context_entry = user_entry.model_copy(
                    update={"content": f"[Selected element: {selection.selector}] {content}"}
                )
                instructions = f"Selected element: {selection.selector}. {text}"
            if not instructions and shots:
                selectors = ", ".join(s.selector for s in shots)
                instructions = (
                    f"Process the attached screenshots of the selected elements: {selectors}."
                )

            turn = await self._ledger.begin_turn(session_id, user_entry, context_entry)
            self._status(session_id, "started", "Thinking...")
            logger.info("turn_processing_started", turn=turn, allow_variants=allow_variants)

            session = await self._lifecycle.get(session_id)
            result = await self._loop.run(
                AgentRequest(
                    session_id=session_id,
                    instructions=instructions,
                    files=session.files,
                    conversation=session.context[:-1],
                    attachments=shots,
                    current_version=session.current_version,
                    image_generation_allowed=session.image_generation_allowed,
                    allow_variants=allow_variants,
                    on_progress=lambda line: self._status(session_id, "generating", line),
                )
            )

            variants = result.variant_request
            if result.outcome is AgentOutcome.VARIANTS_REQUESTED and variants is not None:
                return await self._start_variants(session_id, turn, variants, instructions)

            if result.target_version is not None:
                await self._versions.commit_files(
                    session_id, result.files, result.target_version
                )
                await self._ledger.seal_turn(session_id, result.target_version)
            await self._ledger.append_assistant_entries(session_id, result.new_entries)
            if not _ends_with_visible_reply(result.new_entries):
                await self._ledger.append_assistant_entries(
                    session_id,
                    [ChatEntry(role="assistant", content=result.summary)],
                    history_only=True,
                )
        except Exception as exc:
            logger.error("turn_processing_failed", error=str(exc))
            self._status(session_id, "error", "Failed to process request.", details=str(exc))
            raise

        if result.outcome is AgentOutcome.FAILED:
            self._status(
                session_id, "error", "Failed to process request.", details=result.summary
            )
        else:
            self._status(session_id, "completed", "Request completed.", details=result.summary)
        logger.info(
            "turn_processing_finished",
            turn=turn,
            outcome=str(result.outcome),
            committed_version=result.target_version,
        )
        return ChatResult(
            message=result.summary,
            session=await self._lifecycle.get(session_id),
            outcome=result.outcome,
        )

    async def _start_variants(
        self, session_id: str, turn: int, request: VariantRequest, instructions: str
    ) -> ChatResult:
        count = request.count
        self._status(session_id, "completed", f"Starting generation of {count} variants...")
        siblings = self._branching.fan_out(session_id, turn, request, instructions)
        announcement = f"Created {count} variants in new sessions."
        await self._ledger.append_assistant_entries(
            session_id, [ChatEntry(role="assistant", content=announcement)], history_only=True
        )
        return ChatResult(
            message=announcement,
            session=await self._lifecycle.get(session_id),
            outcome=AgentOutcome.VARIANTS_REQUESTED,
            variant_session_ids=[s.id for s in siblings],
        )

    async def _run_variant(self, session_id: str, instruction: str) -> ChatResult:
        return await self.handle_user_message(session_id, instruction, allow_variants=False)

    def _status(
        self, session_id: str, status: ChatStatus, message: str, *, details: Any = None
    ) -> None:
        payload: dict[str, Any] = {"session_id": session_id, "status": status, "message": message}
        if details is not None:
            payload["details"] = details
        self._bus.publish(PagecraftEvent.CHAT_STATUS, payload)


def _ends_with_visible_reply(entries: list[ChatEntry]) -> bool:
    if not entries:
        return False
    last = entries[-1]
    return last.role == "assistant" and bool(last.ui_text().strip())
