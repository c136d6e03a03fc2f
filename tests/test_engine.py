"""Tests for completion engines and message conversion."""

from __future__ import annotations

from types import SimpleNamespace

from pagecraft.agent.engine import (
    LiteLLMEngine,
    MockCompletionEngine,
    StepFinished,
    TextDelta,
    ToolCallRequest,
    create_engine,
    to_openai_messages,
)
from pagecraft.models.chat import (
    ChatEntry,
    ErrorOutput,
    ImagePart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from pagecraft.models.config import MOCK_ENV_VAR, AgentConfig


async def collect(stream) -> list:
    return [event async for event in stream]


def chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)], usage=usage
    )


def fragment(index, id=None, name=None, arguments=None):
    return SimpleNamespace(
        index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments)
    )


class TestToOpenAIMessages:
    def test_structured_entries(self) -> None:
        entries = [
            ChatEntry(role="user", content="hi"),
            ChatEntry(
                role="assistant",
                content=[
                    TextPart(text="Reading."),
                    ToolCallPart(tool_call_id="c1", tool_name="read_file", input={"file": "css"}),
                ],
            ),
            ChatEntry(
                role="tool",
                content=[
                    ToolResultPart(
                        tool_call_id="c1",
                        tool_name="read_file",
                        output=ErrorOutput(value="nope"),
                    )
                ],
            ),
        ]
        messages = to_openai_messages(entries)

        assert messages[0] == {"role": "user", "content": "hi"}
        assert messages[1]["content"] == "Reading."
        assert messages[1]["tool_calls"][0]["function"] == {
            "name": "read_file",
            "arguments": '{"file": "css"}',
        }
        assert messages[2] == {"role": "tool", "tool_call_id": "c1", "content": "Error: nope"}

    def test_assistant_with_only_calls_has_null_content(self) -> None:
        entry = ChatEntry(
            role="assistant",
            content=[ToolCallPart(tool_call_id="c", tool_name="summary", input={})],
        )
        assert to_openai_messages([entry])[0]["content"] is None

    def test_user_images_become_image_url_parts(self) -> None:
        entry = ChatEntry(
            role="user",
            content=[
                TextPart(text="Match this"),
                ImagePart(image="data:image/png;base64,AAAA"),
                ImagePart(image="data:image/png;base64,BBBB"),
            ],
        )
        assert to_openai_messages([entry]) == [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Match this"},
                    {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                    {"type": "image_url", "image_url": {"url": "data:image/png;base64,BBBB"}},
                ],
            }
        ]


class TestCreateEngine:
    def test_selection(self, monkeypatch) -> None:
        monkeypatch.delenv(MOCK_ENV_VAR, raising=False)
        assert create_engine(AgentConfig()) is None
        assert isinstance(create_engine(AgentConfig(model="openai/gpt-4.1")), LiteLLMEngine)
        monkeypatch.setenv(MOCK_ENV_VAR, "1")
        assert isinstance(create_engine(AgentConfig(model="openai/gpt-4.1")), MockCompletionEngine)


class TestMockEngine:
    async def test_reads_then_summarizes(self, estimator) -> None:
        engine = MockCompletionEngine(estimator)
        first = await collect(
            engine.stream(
                system_prompt="sys", messages=[ChatEntry(role="user", content="hi")], tools=[]
            )
        )
        assert isinstance(first[0], ToolCallRequest)
        assert first[0].tool_name == "read_file"
        assert isinstance(first[-1], StepFinished)

        tool_entry = ChatEntry(
            role="tool",
            content=[
                ToolResultPart(
                    tool_call_id="x", tool_name="read_file", output=ErrorOutput(value="-")
                )
            ],
        )
        second = await collect(
            engine.stream(
                system_prompt="sys",
                messages=[ChatEntry(role="user", content="hi"), tool_entry],
                tools=[],
            )
        )
        calls = [e for e in second if isinstance(e, ToolCallRequest)]
        assert calls[0].tool_name == "summary"
        assert calls[0].input["message"].startswith("[Mock] Received: hi.")


class TestLiteLLMEngine:
    async def test_accumulates_tool_call_fragments(self, monkeypatch) -> None:
        """Fragments keyed by index become whole calls, emitted in index order."""
        captured = {}

        async def fake_stream():
            yield chunk(content="Let me look.")
            yield chunk(tool_calls=[fragment(1, id="b", name="read_file", arguments='{"fi')])
            yield chunk(tool_calls=[fragment(0, id="a", name="summary", arguments="")])
            yield chunk(tool_calls=[fragment(1, arguments='le": "css"}')])
            yield chunk(
                finish_reason="tool_calls",
                usage=SimpleNamespace(
                    prompt_tokens=50,
                    completion_tokens=7,
                    total_tokens=57,
                    prompt_tokens_details=None,
                ),
            )

        async def fake_acompletion(**kwargs):
            captured.update(kwargs)
            return fake_stream()

        monkeypatch.setattr("litellm.acompletion", fake_acompletion)
        engine = LiteLLMEngine(AgentConfig(model="openai/gpt-4.1", temperature=0.2))
        events = await collect(
            engine.stream(
                system_prompt="sys", messages=[ChatEntry(role="user", content="hi")], tools=[]
            )
        )

        assert events[0] == TextDelta(text="Let me look.")
        calls = [e for e in events if isinstance(e, ToolCallRequest)]
        assert [(c.tool_call_id, c.tool_name, c.input) for c in calls] == [
            ("a", "summary", {}),
            ("b", "read_file", {"file": "css"}),
        ]
        finished = events[-1]
        assert isinstance(finished, StepFinished)
        assert finished.finish_reason == "tool_calls"
        assert finished.usage.effective_total() == 57
        assert captured["messages"][0] == {"role": "system", "content": "sys"}
        assert captured["temperature"] == 0.2
        assert "tools" not in captured

    async def test_unparseable_arguments_become_empty(self, monkeypatch) -> None:
        async def fake_stream():
            yield chunk(tool_calls=[fragment(0, id="a", name="read_file", arguments="{oops")])

        async def fake_acompletion(**kwargs):
            return fake_stream()

        monkeypatch.setattr("litellm.acompletion", fake_acompletion)
        engine = LiteLLMEngine(AgentConfig(model="openai/gpt-4.1"))
        events = await collect(engine.stream(system_prompt="s", messages=[], tools=[]))
        assert events[0] == ToolCallRequest(tool_call_id="a", tool_name="read_file", input={})
