"""Token estimates for steps whose provider reported no usage, and for the mock engine."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Any

from pagecraft.models.chat import TextPart, ToolCallPart, ToolResultPart, output_text

if TYPE_CHECKING:
    from pagecraft.models.chat import ChatEntry

PER_ENTRY_OVERHEAD = 4
"""Role and separator tokens charged for every chat entry."""


def encoding_for_model(model: str | None) -> str:
    """
    Pick a tokenizer encoding name from a litellm model string.

    Returns ``"o200k_base"`` / ``"cl100k_base"`` for OpenAI families,
    ``"claude_heuristic"`` for Anthropic models and ``"heuristic"`` otherwise.
    """
    if not model:
        return "heuristic"
    name = model.lower().split("/")[-1]
    if name.startswith(("gpt-4o", "gpt-4.1", "gpt-5", "o1", "o3", "o4")):
        return "o200k_base"
    if name.startswith(("gpt-4", "gpt-3.5")):
        return "cl100k_base"
    if "claude" in name:
        return "claude_heuristic"
    return "heuristic"


class TokenEstimator:
    """
    Approximate token counts for page sources, prompts and chat entries.

    OpenAI model families are counted with tiktoken when it is installed.
    Claude models use three characters per token; everything else (and any
    model when tiktoken is missing) uses four. Loaded encoders and the
    counts of repeated texts (the system prompt) are memoized.
    Pass ``heuristic_only=True`` to never import tiktoken.
    """

    def __init__(self, *, heuristic_only: bool = False) -> None:
        self._encoders: dict[str, Any] = {}
        self._memo: dict[str, int] = {}
        self._heuristic_only = heuristic_only

    @property
    def heuristic_only(self) -> bool:
        """Whether tiktoken is bypassed in favor of character counts."""
        return self._heuristic_only

    def estimate(self, text: str, model: str | None = None) -> int:
        """Token count of *text*; 0 for empty text, otherwise at least 1."""
        if not text:
            return 0
        encoding = encoding_for_model(model)
        if encoding == "claude_heuristic":
            return _by_chars(text, 3)
        if self._heuristic_only or encoding == "heuristic":
            return _by_chars(text, 4)
        try:
            encoder = self._encoder(encoding)
        except ImportError:
            return _by_chars(text, 4)
        return len(encoder.encode(text))

    def estimate_cached(self, text: str, model: str | None = None) -> int:
        """Like :meth:`estimate`, memoized on the text's digest."""
        key = f"{encoding_for_model(model)}:{self.content_hash(text)}"
        if key not in self._memo:
            self._memo[key] = self.estimate(text, model)
        return self._memo[key]

    def estimate_entry(self, entry: ChatEntry, model: str | None = None) -> int:
        """Count one chat entry: its text, tool-call arguments and tool outputs."""
        if isinstance(entry.content, str):
            return PER_ENTRY_OVERHEAD + self.estimate(entry.content, model)
        pieces: list[str] = []
        for part in entry.content:
            if isinstance(part, TextPart):
                pieces.append(part.text)
            elif isinstance(part, ToolCallPart):
                pieces.append(f"{part.tool_name} {part.input}")
            elif isinstance(part, ToolResultPart):
                pieces.append(output_text(part.output))
        return PER_ENTRY_OVERHEAD + sum(self.estimate(p, model) for p in pieces)

    def estimate_prompt(
        self, system_prompt: str, entries: list[ChatEntry], model: str | None = None
    ) -> int:
        """Input tokens of one completion step: the system prompt plus every entry."""
        return self.estimate_cached(system_prompt, model) + sum(
            self.estimate_entry(e, model) for e in entries
        )

    def _encoder(self, encoding: str) -> Any:
        if encoding not in self._encoders:
            import tiktoken

            self._encoders[encoding] = tiktoken.get_encoding(encoding)
        return self._encoders[encoding]

    @staticmethod
    def content_hash(text: str) -> str:
        return hashlib.sha256(text.encode()).hexdigest()


def _by_chars(text: str, chars_per_token: int) -> int:
    return max(1, len(text) // chars_per_token)
