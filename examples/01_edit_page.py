"""
Example 01: Edit a Page
=======================

Demonstrates the basic PageStudio flow:
- Opening a studio with PageStudio.open()
- Creating a session and sending instructions
- Watching chat.status events as the agent works
- Browsing versions, undoing a turn and exporting a turn archive

Run without an API key:
    PAGECRAFT_MOCK_LLM=1 python examples/01_edit_page.py

Run with a real LLM (set your provider key first):
    OPENAI_API_KEY=sk-... PAGECRAFT_MODEL=openai/gpt-4.1 python examples/01_edit_page.py
"""

import asyncio
from pathlib import Path

from pagecraft import PagecraftConfig, PagecraftEvent, PageStudio, StoreConfig


def on_status(event, payload) -> None:
    print(f"  [{payload['status']}] {payload.get('message', '')}")


async def main() -> None:
    print("=== Pagecraft Edit Page Example ===\n")

    config = PagecraftConfig.from_env()
    config.store = StoreConfig(root_dir="/tmp/pagecraft_example_01")

    async with PageStudio.open(config) as studio:
        studio.subscribe(PagecraftEvent.CHAT_STATUS, on_status)

        session = await studio.create_session()
        print(f"Session created: {session.id} (group {session.group})\n")

        instructions = [
            "Add a heading that says 'Hello, Pagecraft'",
            "Make the background a soft blue",
        ]
        for i, text in enumerate(instructions, 1):
            print(f"Turn {i}: {text}")
            result = await studio.send(session.id, text)
            print(f"  -> {result.message}")
            print(f"  HEAD is now version {result.session.current_version}\n")

        history = await studio.get_history(session.id)
        print(f"History entries: {len(history)}")

        undo = await studio.undo_last_turn(session.id)
        print(f"Undid turn {undo.undone_turn}; HEAD back to version {undo.current_version}")
        print(f"Restored input: {undo.restored_input!r}\n")

        archive = await studio.export_turn_archive(session.id, 1)
        out = Path("/tmp/pagecraft_example_01.zip")
        out.write_bytes(archive)
        print(f"Turn 1 exported to {out} ({len(archive):,} bytes)")

    print("\nStudio closed cleanly.")


if __name__ == "__main__":
    asyncio.run(main())
