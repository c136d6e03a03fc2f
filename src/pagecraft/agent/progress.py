"""
Turn progress: line-buffered streaming from the engine reader to a sink.

The agent loop pushes raw chunks (text deltas and tool-call labels) into a
bounded :class:`ProgressChannel`. A consumer task runs them through a
:class:`LineBuffer` and hands complete lines to the sink, typically a
callback publishing ``chat.status{status: "generating"}``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

ProgressSink = Callable[[str], None | Awaitable[None]]

IMMEDIATE_MARKERS: tuple[str, ...] = ("Tool call:", "Step ")
"""Chunks starting with one of these are emitted as-is, bypassing the buffer."""

_CLOSE = object()


class LineBuffer:
    """
    Accumulates streamed text and releases it one complete line at a time.

    Blank lines are dropped and emitted lines are stripped. The trailing
    partial line stays buffered until more text (or :meth:`flush`) arrives.
    """

    def __init__(self, markers: tuple[str, ...] = IMMEDIATE_MARKERS) -> None:
        self._markers = markers
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        if chunk.startswith(self._markers):
            return [chunk.rstrip("\n")]
        self._pending += chunk
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.strip() for line in lines if line.strip()]

    def flush(self) -> list[str]:
        rest, self._pending = self._pending.strip(), ""
        return [rest] if rest else []


class ProgressChannel:
    """
    Bounded channel between the engine reader and the progress sink.

    ``send`` waits when the queue is full, so a slow sink applies
    backpressure to the stream instead of growing memory. Sink errors are
    logged and never reach the loop.

    Usage::

        async with ProgressChannel(on_line) as progress:
            async for event in engine.stream(...):
                await progress.send(event.text)
    """

    def __init__(self, sink: ProgressSink | None, *, maxsize: int = 256) -> None:
        self._sink = sink
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._buffer = LineBuffer()
        self._consumer: asyncio.Task[None] | None = None
        self._logger = structlog.get_logger("pagecraft.agent")

    async def __aenter__(self) -> ProgressChannel:
        self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def start(self) -> None:
        if self._consumer is None and self._sink is not None:
            self._consumer = asyncio.create_task(self._consume())

    async def send(self, chunk: str) -> None:
        if self._consumer is None or not chunk:
            return
        await self._queue.put(chunk)

    async def close(self) -> None:
        """Flush the trailing partial line and wait for the sink to drain."""
        if self._consumer is None:
            return
        await self._queue.put(_CLOSE)
        await self._consumer
        self._consumer = None

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                for line in self._buffer.flush():
                    await self._emit(line)
                return
            for line in self._buffer.feed(str(item)):
                await self._emit(line)

    async def _emit(self, line: str) -> None:
        assert self._sink is not None
        try:
            result = self._sink(line)
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            self._logger.warning("progress_sink_failed", error=str(exc))
