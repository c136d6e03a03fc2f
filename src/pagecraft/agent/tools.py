"""
The tool catalog exposed to the model during one turn.

Every tool takes a validated argument model and returns a tagged
``ToolOutput`` (text, json or error). Tools never raise into the loop: bad
arguments, failed edits and provider errors all become ``ErrorOutput``
results the model sees on its next step. Storage errors are the exception;
they indicate a broken invariant and propagate.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from pagecraft.agent.engine import ToolCallRequest, ToolSpec
from pagecraft.images import ImageLibrary
from pagecraft.models.chat import ErrorOutput, JsonOutput, TextOutput
from pagecraft.models.config import BranchConfig
from pagecraft.models.files import FileKey, FileSnapshot, normalize_file_key
from pagecraft.models.results import VariantRequest
from pagecraft.store.errors import PagecraftStoreError
from pagecraft.store.versions import VersionStore

ToolResult = TextOutput | JsonOutput | ErrorOutput

# ── Errors ─────────────────────────────────────────────────────────────────────


class ToolError(Exception):
    """A tool could not do what was asked. The message is shown to the model."""


class AmbiguousMatchError(ToolError):
    """``oldString`` occurs more than once."""

    def __init__(self, file: str) -> None:
        super().__init__(
            f"oldString found multiple times in {file}. Provide more unique context."
        )
        self.file = file


class MatchNotFoundError(ToolError):
    """``oldString`` occurs nowhere, even after whitespace/newline normalization."""

    def __init__(self, file: str) -> None:
        super().__init__(f"oldString not found in {file}")
        self.file = file


# ── Edit matching ──────────────────────────────────────────────────────────────


def apply_edit(content: str, old_string: str, new_string: str, file: str = "file") -> str:
    """
    Replace the single occurrence of *old_string* in *content*.

    Matching is tried in order: exact, trimmed, CRLF-normalized, then
    CRLF-normalized and trimmed. When a normalized match is used the result
    keeps LF line endings.

    Raises:
        MatchNotFoundError: If no variant of *old_string* occurs.
        AmbiguousMatchError: If the matched string occurs more than once.
    """
    if not old_string.strip():
        raise MatchNotFoundError(file)

    target = old_string
    if target not in content:
        trimmed = target.strip()
        normalized_content = content.replace("\r\n", "\n")
        normalized_target = target.replace("\r\n", "\n")
        if trimmed in content:
            target = trimmed
        elif normalized_target in normalized_content:
            content, target = normalized_content, normalized_target
        elif normalized_target.strip() in normalized_content:
            content, target = normalized_content, normalized_target.strip()
        else:
            raise MatchNotFoundError(file)

    if content.count(target) > 1:
        raise AmbiguousMatchError(file)
    return content.replace(target, new_string, 1)


# ── Argument models ────────────────────────────────────────────────────────────


class ToolArgs(BaseModel):
    """Base for tool arguments. Accepts camelCase (``oldString``) and snake_case names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    summary: str = Field(
        default="",
        description="Explain why you are doing this. This will be shown to the user.",
    )


class _FileArgs(ToolArgs):
    file: FileKey = Field(description="The file to operate on")

    @field_validator("file", mode="before")
    @classmethod
    def normalize_file(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return normalize_file_key(value)
            except ValueError:
                return value
        return value


class ReadFileArgs(_FileArgs):
    pass


class EditFileArgs(_FileArgs):
    old_string: str = Field(description="The exact string to replace. Must be unique in the file.")
    new_string: str = Field(description="The new string to replace it with.")


class SummaryArgs(BaseModel):
    message: str = Field(
        description=(
            "The summary message to display to the user. Use Markdown formatting "
            "(bold, italic, lists) to make it more readable."
        )
    )


class ListImagesArgs(ToolArgs):
    pass


class GenerateImageArgs(ToolArgs):
    description: str = Field(description="Detailed description of the image to generate")


class EditImageArgs(ToolArgs):
    filename: str = Field(
        description='The filename of the image to regenerate (e.g., "image.png")'
    )
    description: str = Field(description="The new detailed description for the image")


class GenerateVariantsArgs(BaseModel):
    count: int = Field(description="Number of variants to generate")
    instructions: list[str] = Field(
        default_factory=list,
        description=(
            "Specific, actionable instructions for each variant. Do NOT include "
            '"Variant 1", "Variant 2", etc. prefixes. Focus on WHAT to change '
            '(e.g., "Change background to blue...", "Update font to...").'
        ),
    )


# ── Turn state ─────────────────────────────────────────────────────────────────


@dataclass
class TurnState:
    """Mutable working state of one agent loop run."""

    session_id: str
    files: FileSnapshot
    current_version: int
    image_generation_allowed: bool = True
    allow_variants: bool = True
    target_version: int | None = None
    summary: str | None = None
    variant_request: VariantRequest | None = None
    stop_requested: bool = False
    mutations: int = 0


@dataclass
class ToolDefinition:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: Callable[[Any], Awaitable[ToolResult]]
    terminal: bool = False
    parameters: dict[str, Any] = field(default_factory=dict)

    def spec(self) -> ToolSpec:
        schema = self.parameters or self.args_model.model_json_schema(by_alias=True)
        return ToolSpec(name=self.name, description=self.description, parameters=schema)


# ── Catalog ────────────────────────────────────────────────────────────────────


class ToolCatalog:
    """
    Tools available for one turn, bound to that turn's :class:`TurnState`.

    ``edit_file``, ``generate_image`` and ``edit_image`` lazily call
    ``VersionStore.init_next_version`` the first time any of them runs; the
    resulting version is memoized on the state so a turn creates at most one
    new version. ``generate_image`` / ``edit_image`` exist only when image
    generation is allowed, ``generate_variants`` only when variants are.
    """

    def __init__(
        self,
        state: TurnState,
        versions: VersionStore,
        images: ImageLibrary,
        branching: BranchConfig | None = None,
    ) -> None:
        self._state = state
        self._versions = versions
        self._images = images
        self._branching = branching or BranchConfig()
        self._logger = structlog.get_logger("pagecraft.agent").bind(session_id=state.session_id)
        self._tools: dict[str, ToolDefinition] = {}
        self._register_defaults()

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> list[ToolSpec]:
        return [tool.spec() for tool in self._tools.values()]

    def is_terminal(self, tool_name: str) -> bool:
        tool = self._tools.get(tool_name)
        return tool is not None and tool.terminal

    @staticmethod
    def progress_label(call: ToolCallRequest) -> str:
        """The line shown to the user when the model issues *call*."""
        summary = call.input.get("summary") if isinstance(call.input, dict) else None
        if isinstance(summary, str) and summary.strip():
            return summary.strip()
        return f"Tool call: {call.tool_name}"

    async def execute(self, call: ToolCallRequest) -> ToolResult:
        """Run one tool call. Never raises except for storage errors."""
        tool = self._tools.get(call.tool_name)
        if tool is None:
            return ErrorOutput(value=f"Unknown tool: {call.tool_name}")
        try:
            args = tool.args_model.model_validate(call.input)
        except ValidationError as exc:
            return ErrorOutput(value=f"Invalid arguments for {call.tool_name}: {_brief(exc)}")

        try:
            return await tool.handler(args)
        except PagecraftStoreError:
            raise
        except ToolError as exc:
            self._logger.info("tool_rejected", tool=call.tool_name, reason=str(exc))
            return ErrorOutput(value=str(exc))
        except Exception as exc:
            self._logger.warning("tool_failed", tool=call.tool_name, error=str(exc))
            return ErrorOutput(value=f"{call.tool_name} failed: {exc}")

    # ── Registration ───────────────────────────────────────────────────────────

    def _register(self, tool: ToolDefinition) -> None:
        self._tools[tool.name] = tool

    def _register_defaults(self) -> None:
        self._register(
            ToolDefinition(
                name="read_file",
                description=(
                    "Read the content of a file. "
                    "Use this to understand current code before editing."
                ),
                args_model=ReadFileArgs,
                handler=self._read_file,
            )
        )
        self._register(
            ToolDefinition(
                name="edit_file",
                description=(
                    "Edit a file by replacing exact string match. "
                    "The oldString must match exactly one location in the file."
                ),
                args_model=EditFileArgs,
                handler=self._edit_file,
            )
        )
        self._register(
            ToolDefinition(
                name="summary",
                description=(
                    "Call this when you are done making changes to provide a summary of what "
                    "you did to the user. You can use Markdown to format the message."
                ),
                args_model=SummaryArgs,
                handler=self._summary,
                terminal=True,
            )
        )
        self._register(
            ToolDefinition(
                name="list_images",
                description=(
                    "List available images in the current session. Use this to see if a "
                    "suitable image already exists before generating a new one."
                ),
                args_model=ListImagesArgs,
                handler=self._list_images,
            )
        )
        if self._state.image_generation_allowed:
            self._register(
                ToolDefinition(
                    name="generate_image",
                    description=(
                        "Generate an image based on a description. Use this when you need a "
                        "specific image that doesn't exist. Returns the filename of the "
                        "generated image."
                    ),
                    args_model=GenerateImageArgs,
                    handler=self._generate_image,
                )
            )
            self._register(
                ToolDefinition(
                    name="edit_image",
                    description=(
                        "Regenerate an existing image. The new image replaces the old one "
                        "with the same filename."
                    ),
                    args_model=EditImageArgs,
                    handler=self._edit_image,
                )
            )
        if self._state.allow_variants:
            schema = GenerateVariantsArgs.model_json_schema()
            schema["properties"]["count"].update(
                minimum=self._branching.min_variants,
                maximum=self._branching.max_variants,
            )
            self._register(
                ToolDefinition(
                    name="generate_variants",
                    description=(
                        "Generate multiple variants of the page based on user request. Use this "
                        "when the user asks for multiple variations, alternatives, or different "
                        "styles/designs of the page. Do NOT implement in-page switchers for this "
                        "purpose. Each instruction must be an actionable command describing HOW "
                        "to modify the current page, not just the final state."
                    ),
                    args_model=GenerateVariantsArgs,
                    handler=self._generate_variants,
                    terminal=True,
                    parameters=schema,
                )
            )

    # ── Handlers ───────────────────────────────────────────────────────────────

    async def _ensure_next_version(self) -> int:
        if self._state.target_version is None:
            self._state.target_version = await self._versions.init_next_version(
                self._state.session_id
            )
        return self._state.target_version

    async def _read_file(self, args: ReadFileArgs) -> ToolResult:
        return TextOutput(value=self._state.files.get(args.file))

    async def _edit_file(self, args: EditFileArgs) -> ToolResult:
        await self._ensure_next_version()
        content = self._state.files.get(args.file)
        updated = apply_edit(content, args.old_string, args.new_string, args.file)
        self._state.files = self._state.files.replace(args.file, updated)
        self._state.mutations += 1
        self._logger.debug("file_edited", file=args.file, chars=len(updated))
        return TextOutput(value=f"Successfully updated {args.file}")

    async def _summary(self, args: SummaryArgs) -> ToolResult:
        self._state.summary = args.message
        self._state.stop_requested = True
        return TextOutput(value="Summary delivered.")

    async def _list_images(self, args: ListImagesArgs) -> ToolResult:
        version = self._state.target_version
        if version is None:
            version = self._state.current_version
        records = await self._images.list_images(self._state.session_id, version)
        if not records:
            return TextOutput(value="No images found in this session.")
        return JsonOutput(value=[r.to_json_dict() for r in records])

    async def _generate_image(self, args: GenerateImageArgs) -> ToolResult:
        version = await self._ensure_next_version()
        try:
            filename = await self._images.generate_and_save(
                self._state.session_id, args.description, version
            )
        except PagecraftStoreError:
            raise
        except Exception as exc:
            raise ToolError(f"Failed to generate image: {exc}") from exc
        self._state.mutations += 1
        return TextOutput(value=f"Image generated successfully: {filename}")

    async def _edit_image(self, args: EditImageArgs) -> ToolResult:
        version = await self._ensure_next_version()
        try:
            filename = await self._images.generate_and_save(
                self._state.session_id, args.description, version, args.filename
            )
        except PagecraftStoreError:
            raise
        except Exception as exc:
            raise ToolError(f"Failed to update image: {exc}") from exc
        self._state.mutations += 1
        return TextOutput(value=f"Image updated successfully: {filename}")

    async def _generate_variants(self, args: GenerateVariantsArgs) -> ToolResult:
        low, high = self._branching.min_variants, self._branching.max_variants
        if not low <= args.count <= high:
            raise ToolError(f"count must be between {low} and {high}, got {args.count}")
        self._state.variant_request = VariantRequest(
            count=args.count,
            instructions=list(args.instructions),
        )
        self._state.stop_requested = True
        return TextOutput(value="Variants generation requested.")


def _brief(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in exc.errors()
    )
