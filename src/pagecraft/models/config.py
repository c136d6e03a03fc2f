"""Configuration models for Pagecraft studios and components."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

MOCK_ENV_VAR = "PAGECRAFT_MOCK_LLM"
"""Set to ``1`` to use the offline completion engine and image generator."""


class StoreConfig(BaseModel):
    """Configuration for the on-disk session tree."""

    root_dir: str = Field(
        default="./data/sessions",
        description="Directory holding one sub-directory per session. ~ is expanded at runtime.",
    )

    def resolved_root(self) -> Path:
        """Return the absolute session root."""
        return Path(self.root_dir).expanduser().resolve()


class AgentConfig(BaseModel):
    """Configuration for the agent tool loop."""

    model: str | None = Field(
        default=None,
        description="LLM model string in litellm format. None = no engine configured.",
    )

    max_steps: int = Field(
        default=30,
        ge=1,
        le=200,
        description="Step ceiling for one turn. Bounds worst-case duration instead of timeouts.",
    )

    max_context_tokens: int = Field(
        default=128_000,
        ge=1_000,
        description="Context window of the model. Only used for the usage log line.",
    )

    max_output_tokens: int = Field(
        default=8_192,
        ge=256,
        description="Maximum output tokens for a single completion step.",
    )

    temperature: float | None = Field(default=None, ge=0.0, le=2.0)

    commit_on_step_limit: bool = False
    """Whether working-copy edits are returned for commit when the step ceiling is hit."""


class ImageConfig(BaseModel):
    """Configuration for the image-generation collaborator."""

    model: str = Field(
        default="gemini/gemini-2.5-flash-image",
        description="litellm image model used by generate_image / edit_image.",
    )

    default_allowed: bool = True
    """Initial value of ``image_generation_allowed`` for new sessions."""


class BranchConfig(BaseModel):
    """Configuration for variant fan-out."""

    min_variants: int = Field(default=2, ge=1, le=10)
    max_variants: int = Field(default=5, ge=1, le=10)
    group_count: int = Field(
        default=32,
        ge=1,
        le=1_024,
        description="Display groups are drawn uniformly from range(group_count).",
    )

    @model_validator(mode="after")
    def validate_variant_bounds(self) -> BranchConfig:
        if self.min_variants > self.max_variants:
            raise ValueError("min_variants must not exceed max_variants")
        return self


class PagecraftConfig(BaseModel):
    """
    Top-level configuration for a :class:`~pagecraft.studio.PageStudio`.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = PagecraftConfig(
            store=StoreConfig(root_dir="/var/lib/pagecraft"),
            agent=AgentConfig(model="openai/gpt-4.1", max_steps=20),
        )
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    images: ImageConfig = Field(default_factory=ImageConfig)
    branching: BranchConfig = Field(default_factory=BranchConfig)

    @classmethod
    def default(cls) -> PagecraftConfig:
        """Return a config instance with all defaults."""
        return cls()

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> PagecraftConfig:
        """
        Build a config from environment variables.

        Recognised variables: ``PAGECRAFT_SESSION_ROOT`` (or ``SESSION_ROOT``),
        ``PAGECRAFT_MODEL``, ``PAGECRAFT_IMAGE_MODEL``, ``PAGECRAFT_MAX_STEPS``.
        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        cfg = cls()

        root = (env.get("PAGECRAFT_SESSION_ROOT") or env.get("SESSION_ROOT") or "").strip()
        if root:
            cfg.store = StoreConfig(root_dir=root)

        agent_update: dict[str, object] = {}
        model = env.get("PAGECRAFT_MODEL", "").strip()
        if model:
            agent_update["model"] = model
        max_steps = env.get("PAGECRAFT_MAX_STEPS", "").strip()
        if max_steps:
            agent_update["max_steps"] = int(max_steps)
        if agent_update:
            cfg.agent = AgentConfig.model_validate({**cfg.agent.model_dump(), **agent_update})

        image_model = env.get("PAGECRAFT_IMAGE_MODEL", "").strip()
        if image_model:
            cfg.images = ImageConfig(model=image_model)
        return cfg
