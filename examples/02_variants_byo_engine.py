"""
Example 02: Variants with Your Own Engine
=========================================

Demonstrates plugging a custom completion engine into PageStudio and
fanning one request out into sibling sessions:
- Implementing the CompletionEngine protocol (a model property and stream())
- Passing the engine to PageStudio.open(engine=...)
- Receiving session.created events as variant sessions appear
- Waiting for background variant turns with wait_for_background()

No API key needed: the engine below is a hand-written script.
    python examples/02_variants_byo_engine.py
"""

import asyncio

from pagecraft import PagecraftConfig, PagecraftEvent, PageStudio, StoreConfig
from pagecraft.agent.engine import StepFinished, TextDelta, ToolCallRequest

COLORS = ["tomato", "seagreen", "rebeccapurple"]


class PaletteEngine:
    """Asks for three variants, then recolors the background in each variant turn."""

    @property
    def model(self) -> str:
        return "palette-script"

    async def stream(self, *, system_prompt, messages, tools):
        last = messages[-1]
        tool_names = {t.name for t in tools}

        if last.role == "tool":
            yield ToolCallRequest(
                tool_call_id="done", tool_name="summary", input={"message": "Recolored."}
            )
        elif "generate_variants" in tool_names:
            yield TextDelta(text="Trying three palettes.\n")
            yield ToolCallRequest(
                tool_call_id="fan",
                tool_name="generate_variants",
                input={"count": 3, "instructions": [f"Use {c} as background" for c in COLORS]},
            )
        else:
            color = last.ui_text().split()[1]
            yield ToolCallRequest(
                tool_call_id="edit",
                tool_name="edit_file",
                input={
                    "file": "styles.css",
                    "oldString": "background-color: #f5f5f5;",
                    "newString": f"background-color: {color};",
                    "summary": f"Switching to {color}",
                },
            )
        yield StepFinished()


async def main() -> None:
    print("=== Pagecraft Variants Example ===\n")

    config = PagecraftConfig(store=StoreConfig(root_dir="/tmp/pagecraft_example_02"))

    async with PageStudio.open(config, engine=PaletteEngine()) as studio:
        studio.subscribe(
            PagecraftEvent.SESSION_CREATED,
            lambda e, p: print(f"  new session {p['new_session_id']} (group {p.get('group')})"),
        )

        source = await studio.create_session()
        result = await studio.send(source.id, "Show me a few background colors")
        print(f"\n{result.message}")

        await studio.wait_for_background()

        for variant_id in result.variant_session_ids:
            variant = await studio.get(variant_id)
            styles = (await studio.read_current(variant_id)).styles
            line = next(ln for ln in styles.splitlines() if "background-color" in ln)
            print(f"{variant_id}: v{variant.current_version} {line.strip()}")

        print(f"\nSource session still at version {(await studio.get(source.id)).current_version}")


if __name__ == "__main__":
    asyncio.run(main())
