"""Variant fan-out: one source turn becomes N sibling sessions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog

from pagecraft.lifecycle import SessionLifecycle, make_id
from pagecraft.models.results import PendingSession, VariantRequest

VariantRunner = Callable[[str, str], Awaitable[object]]
"""``(new_session_id, instruction)`` → run one user-message turn with variants disabled."""


class BranchCoordinator:
    """
    Turns a :class:`~pagecraft.models.results.VariantRequest` into sibling sessions.

    Ids and display groups are allocated synchronously so the caller can
    report them at once. Each sibling is then hydrated on its own background
    task: it is cloned at the turn *before* the triggering turn, announced
    on ``session.created``, and handed to *runner* with its own instruction.

    The runner is expected to disable variant generation, so fan-out is
    exactly one level deep.
    """

    def __init__(self, lifecycle: SessionLifecycle, runner: VariantRunner) -> None:
        self._lifecycle = lifecycle
        self._runner = runner
        self._logger = structlog.get_logger("pagecraft.branching")

    def fan_out(
        self,
        source_id: str,
        trigger_turn: int,
        request: VariantRequest,
        fallback_instruction: str,
    ) -> list[PendingSession]:
        """
        Allocate ``request.count`` siblings and start hydrating them.

        Args:
            source_id: Session whose turn requested the variants.
            trigger_turn: The turn that requested them. Siblings start from
                the state of ``trigger_turn - 1``.
            request: Count and per-sibling instructions.
            fallback_instruction: Used for siblings without an instruction.

        Returns:
            One :class:`PendingSession` per sibling, in index order.
        """
        base_turn = max(trigger_turn - 1, 0)
        siblings: list[PendingSession] = []
        for index in range(request.count):
            pending = PendingSession(
                id=make_id("page"),
                group=self._lifecycle.random_group(),
                current_turn=base_turn,
            )
            instruction = request.instruction_for(index, fallback_instruction)
            self._lifecycle.spawn(
                self._hydrate(source_id, base_turn, pending, instruction),
                session_id=pending.id,
                operation="variant",
            )
            siblings.append(pending)

        self._logger.info(
            "variants_started",
            session_id=source_id,
            turn=trigger_turn,
            count=request.count,
            variant_session_ids=[p.id for p in siblings],
        )
        return siblings

    async def _hydrate(
        self, source_id: str, base_turn: int, pending: PendingSession, instruction: str
    ) -> None:
        await self._lifecycle.clone_at_turn(
            source_id, base_turn, new_id=pending.id, group=pending.group
        )
        self._lifecycle.announce_created(source_id, pending.id, pending.group)
        await self._runner(pending.id, instruction)
