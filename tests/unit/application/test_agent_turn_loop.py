"""Unit tests for the Agent turn loop.

Backends and tool transports are the scripted fakes from tests/fakes.py,
so every scenario runs without a model or a network.
"""

import asyncio

import pytest
from structlog.testing import capture_logs

from agent_loop.application.agent import Agent, AgentState
from agent_loop.application.prompt_builder import ChatMLPromptBuilder
from agent_loop.application.prompt_cache import PromptCache
from agent_loop.domain.entities import Message, MessageRole
from agent_loop.domain.errors import (
    AgentCancelledError,
    AlreadyRunningError,
    ModelBackendError,
    ToolInvocationError,
    ToolTransportError,
)
from agent_loop.domain.value_objects import (
    AgentConfiguration,
    ContentBlock,
    GenerationChunk,
    StreamDelta,
    ToolSpec,
)
from tests.fakes import (
    CharTokenBackend,
    FakeToolTransport,
    ScriptedBackend,
    text_delta,
    tool_delta,
)

pytestmark = pytest.mark.unit


def _config(**overrides) -> AgentConfiguration:
    return AgentConfiguration(model="test-model", system_prompt="You are a test.", **overrides)


def _roles(messages) -> list[MessageRole]:
    return [m.role for m in messages]


READ_FILE_CALL = [tool_delta(0, name="read_file", arguments='{"path": "a.txt"}', call_id="call_1")]


class TestSingleTurn:
    async def test_plain_answer_appends_one_assistant_message(self) -> None:
        backend = ScriptedBackend([[text_delta("4")]])
        agent = Agent(_config(), backend)

        turns = await agent.run("What's 2+2?")

        assert turns == 1
        assert _roles(agent.messages) == [MessageRole.SYSTEM, MessageRole.USER, MessageRole.ASSISTANT]
        assert agent.messages[-1].content == "4"
        assert agent.messages[-1].raw_content is None
        assert len(backend.calls) == 1
        assert agent.state == AgentState.IDLE
        assert not agent.is_running

    async def test_streamed_text_is_concatenated(self) -> None:
        backend = ScriptedBackend([[text_delta("The "), text_delta("answer "), text_delta("is 4.")]])
        agent = Agent(_config(), backend)

        await agent.run("What's 2+2?")

        assert agent.messages[-1].content == "The answer is 4."

    async def test_reasoning_stripped_but_raw_kept(self) -> None:
        raw = "<think>2+2 is 4</think>4"
        backend = ScriptedBackend([[StreamDelta(text=raw, raw_text=raw)]])
        agent = Agent(_config(), backend)

        await agent.run("What's 2+2?")

        reply = agent.messages[-1]
        assert reply.content == "4"
        assert reply.raw_content == raw
        assert reply.tokenizable_content == raw

    async def test_empty_reply_appends_nothing(self) -> None:
        agent = Agent(_config(), ScriptedBackend([[StreamDelta(finish_reason="stop")]]))

        assert await agent.run("hello?") == 1
        assert _roles(agent.messages) == [MessageRole.SYSTEM, MessageRole.USER]

    async def test_sampling_parameters_forwarded(self) -> None:
        backend = ScriptedBackend([[text_delta("ok")]])
        agent = Agent(_config(temperature=0.1, max_tokens=64, top_p=0.8), backend)

        await agent.run("hi")

        call = backend.calls[0]
        assert (call["temperature"], call["max_tokens"], call["top_p"]) == (0.1, 64, 0.8)


class TestToolTurns:
    async def test_tool_call_then_final_answer(self, fake_tool_transport: FakeToolTransport) -> None:
        backend = ScriptedBackend([READ_FILE_CALL, [text_delta("The file says hello.")]])
        agent = Agent(_config(), backend, fake_tool_transport)
        observed: list[Message] = []

        turns = await agent.run("Read a.txt", on_message=observed.append)

        assert turns == 2
        assert _roles(observed) == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.TOOL,
            MessageRole.ASSISTANT,
        ]
        assert observed == list(agent.messages[1:])

        assistant, tool = observed[1], observed[2]
        assert assistant.content == ""
        assert tool.content == "file contents"
        assert tool.tool_call_id == "call_1"
        assert tool.tool_name == "read_file"
        assert fake_tool_transport.calls == [("read_file", {"path": "a.txt"})]

    async def test_tool_catalog_passed_to_backend(self, fake_tool_transport: FakeToolTransport) -> None:
        backend = ScriptedBackend([[text_delta("no tools needed")]])
        agent = Agent(_config(), backend, fake_tool_transport)

        await agent.run("hi")

        assert [t.name for t in backend.calls[0]["tools"]] == ["read_file"]

    async def test_tool_catalog_refreshed_every_turn(self) -> None:
        transport = FakeToolTransport(tools=[ToolSpec(name="first")])
        backend = ScriptedBackend([[tool_delta(0, name="first", call_id="c1")], [text_delta("done")]])
        agent = Agent(_config(), backend, transport)

        async def add_tool(message: Message) -> None:
            if message.role == MessageRole.TOOL:
                transport.tools.append(ToolSpec(name="second"))

        await agent.run("go", on_message=add_tool)

        assert [t.name for t in backend.calls[1]["tools"]] == ["first", "second"]

    async def test_tool_calls_execute_sequentially_in_order(self) -> None:
        order: list[str] = []

        class OrderedTransport(FakeToolTransport):
            async def call_tool(self, name, arguments=None):
                order.append(f"start:{name}")
                await asyncio.sleep(0)
                order.append(f"end:{name}")
                return [ContentBlock(type="text", text=name)]

        calls = [
            StreamDelta(
                tool_calls=(
                    tool_delta(0, name="one", call_id="c1").tool_calls[0],
                    tool_delta(1, name="two", call_id="c2").tool_calls[0],
                    tool_delta(2, name="three", call_id="c3").tool_calls[0],
                )
            )
        ]
        agent = Agent(_config(), ScriptedBackend([calls, [text_delta("ok")]]), OrderedTransport())

        await agent.run("go")

        assert order == ["start:one", "end:one", "start:two", "end:two", "start:three", "end:three"]
        assert [m.tool_name for m in agent.messages if m.role == MessageRole.TOOL] == ["one", "two", "three"]

    async def test_inline_tool_calls_recovered_from_raw_text(self, fake_tool_transport: FakeToolTransport) -> None:
        raw = (
            "<think>need the file</think>Let me check."
            '<tool_call>{"name": "read_file", "arguments": {"path": "a.txt"}}</tool_call>'
        )
        backend = ScriptedBackend([[StreamDelta(text=raw, raw_text=raw)], [text_delta("done")]])
        agent = Agent(_config(), backend, fake_tool_transport)

        await agent.run("Read a.txt")

        assistant = agent.messages[2]
        assert assistant.content == "Let me check."
        assert assistant.raw_content == raw
        tool = agent.messages[3]
        assert tool.tool_call_id.startswith("call_")
        assert fake_tool_transport.calls == [("read_file", {"path": "a.txt"})]

    async def test_tool_without_arguments_called_with_none(self, fake_tool_transport: FakeToolTransport) -> None:
        backend = ScriptedBackend([[tool_delta(0, name="read_file", call_id="c1")], [text_delta("ok")]])
        agent = Agent(_config(), backend, fake_tool_transport)

        await agent.run("go")

        assert fake_tool_transport.calls == [("read_file", None)]

    async def test_malformed_arguments_drop_call(self, fake_tool_transport: FakeToolTransport) -> None:
        backend = ScriptedBackend([[tool_delta(0, name="read_file", arguments='{"path": ', call_id="c1")]])
        agent = Agent(_config(), backend, fake_tool_transport)

        turns = await agent.run("go")

        assert turns == 1
        assert fake_tool_transport.calls == []
        assert MessageRole.TOOL not in _roles(agent.messages)

    async def test_max_turns_stops_tool_loop(self, fake_tool_transport: FakeToolTransport) -> None:
        backend = ScriptedBackend([READ_FILE_CALL])
        agent = Agent(_config(max_turns=1), backend, fake_tool_transport)

        with capture_logs() as logs:
            turns = await agent.run("loop forever")

        assert turns == 1
        assert len(fake_tool_transport.calls) == 1
        assert _roles(agent.messages)[-1] == MessageRole.TOOL
        assert any(log["event"] == "max_turns_exceeded" for log in logs)

    async def test_max_turns_bounds_model_calls(self, fake_tool_transport: FakeToolTransport) -> None:
        backend = ScriptedBackend([READ_FILE_CALL])
        agent = Agent(_config(max_turns=3), backend, fake_tool_transport)

        assert await agent.run("loop") == 3
        assert len(backend.calls) == 3


class TestToolFailures:
    async def test_failing_tool_becomes_error_message(self) -> None:
        transport = FakeToolTransport(
            tools=[ToolSpec(name="read_file")],
            results={"read_file": ToolInvocationError("permission denied")},
        )
        backend = ScriptedBackend([READ_FILE_CALL, [text_delta("Sorry.")]])
        agent = Agent(_config(), backend, transport)

        turns = await agent.run("Read a.txt")

        assert turns == 2
        tool = agent.messages[3]
        assert tool.role == MessageRole.TOOL
        assert tool.content == "Error executing tool 'read_file': permission denied"
        assert agent.messages[-1].content == "Sorry."

    async def test_listing_failure_degrades_to_no_tools(self) -> None:
        transport = FakeToolTransport(list_error=ToolTransportError("server gone"))
        backend = ScriptedBackend([[text_delta("answer without tools")]])
        agent = Agent(_config(), backend, transport)

        with capture_logs() as logs:
            turns = await agent.run("hi")

        assert turns == 1
        assert backend.calls[0]["tools"] == []
        assert agent.messages[-1].content == "answer without tools"
        assert any(log["event"] == "tool_listing_failed" for log in logs)

    async def test_tool_call_without_transport(self) -> None:
        backend = ScriptedBackend([READ_FILE_CALL, [text_delta("ok")]])
        agent = Agent(_config(), backend)

        await agent.run("go")

        assert agent.messages[3].content.startswith("Error executing tool 'read_file'")


class TestBackendFailures:
    async def test_stream_failure_raises_model_backend_error(self) -> None:
        backend = ScriptedBackend([[text_delta("partial")]], fail_on_turn=0)
        agent = Agent(_config(), backend)

        with pytest.raises(ModelBackendError) as excinfo:
            await agent.run("hi")

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert _roles(agent.messages) == [MessageRole.SYSTEM, MessageRole.USER]
        assert agent.state == AgentState.IDLE

    async def test_failure_on_second_turn_keeps_committed_messages(
        self, fake_tool_transport: FakeToolTransport
    ) -> None:
        backend = ScriptedBackend([READ_FILE_CALL, [text_delta("x")]], fail_on_turn=1)
        agent = Agent(_config(), backend, fake_tool_transport)

        with pytest.raises(ModelBackendError):
            await agent.run("Read a.txt")

        assert _roles(agent.messages) == [
            MessageRole.SYSTEM,
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.TOOL,
        ]

    async def test_agent_usable_after_failure(self) -> None:
        backend = ScriptedBackend([[text_delta("x")], [text_delta("recovered")]], fail_on_turn=0)
        agent = Agent(_config(), backend)

        with pytest.raises(ModelBackendError):
            await agent.run("first")
        await agent.run("second")

        assert agent.messages[-1].content == "recovered"


class BlockingTransport(FakeToolTransport):
    """Tool transport whose calls wait until released."""

    def __init__(self) -> None:
        super().__init__(tools=[ToolSpec(name="read_file")])
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def call_tool(self, name, arguments=None):
        self.calls.append((name, arguments))
        self.started.set()
        await self.release.wait()
        return [ContentBlock(type="text", text="late")]


class TestConcurrency:
    async def test_run_while_running_is_rejected(self) -> None:
        transport = BlockingTransport()
        agent = Agent(_config(), ScriptedBackend([READ_FILE_CALL, [text_delta("done")]]), transport)

        first = asyncio.create_task(agent.run("first"))
        await transport.started.wait()

        assert agent.is_running
        assert agent.state == AgentState.EXECUTING_TOOLS
        messages_before = agent.messages
        with pytest.raises(AlreadyRunningError):
            await agent.run("second")
        assert agent.messages == messages_before

        transport.release.set()
        assert await first == 2

    async def test_cancel_during_tool_execution(self) -> None:
        transport = BlockingTransport()
        agent = Agent(_config(), ScriptedBackend([READ_FILE_CALL, [text_delta("done")]]), transport)
        observed: list[Message] = []

        run = asyncio.create_task(agent.run("first", on_message=observed.append))
        await transport.started.wait()
        agent.cancel()

        with pytest.raises(AgentCancelledError):
            await run

        assert _roles(agent.messages) == [MessageRole.SYSTEM, MessageRole.USER, MessageRole.ASSISTANT]
        assert observed == list(agent.messages[1:])
        assert agent.state == AgentState.IDLE

    async def test_cancel_during_stream(self) -> None:
        gate = asyncio.Event()

        class SlowBackend(ScriptedBackend):
            async def _stream(self, deltas, fail):
                yield text_delta("partial ")
                gate.set()
                await asyncio.sleep(10)
                yield text_delta("never")

        agent = Agent(_config(), SlowBackend([[]]))
        run = asyncio.create_task(agent.run("hi"))
        await gate.wait()
        agent.cancel()

        with pytest.raises(AgentCancelledError):
            await run
        assert _roles(agent.messages) == [MessageRole.SYSTEM, MessageRole.USER]

    async def test_cancel_when_idle_is_noop(self) -> None:
        agent = Agent(_config(), ScriptedBackend([[text_delta("ok")]]))
        agent.cancel()

        assert await agent.run("hi") == 1

    async def test_new_run_after_cancel(self) -> None:
        transport = BlockingTransport()
        backend = ScriptedBackend([READ_FILE_CALL, [text_delta("done")]])
        agent = Agent(_config(), backend, transport)

        run = asyncio.create_task(agent.run("first"))
        await transport.started.wait()
        agent.cancel()
        with pytest.raises(AgentCancelledError):
            await run

        transport.release.set()
        backend.turns = [[text_delta("fresh answer")]]
        backend.calls.clear()
        assert await agent.run("second") == 1
        assert agent.messages[-1].content == "fresh answer"

    async def test_outer_cancellation_propagates_as_cancelled_error(self) -> None:
        transport = BlockingTransport()
        agent = Agent(_config(), ScriptedBackend([READ_FILE_CALL]), transport)

        run = asyncio.create_task(agent.run("first"))
        await transport.started.wait()
        run.cancel()

        with pytest.raises(asyncio.CancelledError):
            await run
        assert not agent.is_running


class TestObserver:
    async def test_async_observer_awaited_in_order(self, fake_tool_transport: FakeToolTransport) -> None:
        seen: list[str] = []

        async def observer(message: Message) -> None:
            await asyncio.sleep(0)
            seen.append(message.role.value)

        backend = ScriptedBackend([READ_FILE_CALL, [text_delta("done")]])
        agent = Agent(_config(), backend, fake_tool_transport)

        await agent.run("go", on_message=observer)

        assert seen == ["user", "assistant", "tool", "assistant"]

    async def test_observer_sees_message_before_next_turn(self, fake_tool_transport: FakeToolTransport) -> None:
        backend = ScriptedBackend([READ_FILE_CALL, [text_delta("done")]])
        agent = Agent(_config(), backend, fake_tool_transport)
        calls_seen: list[int] = []

        await agent.run("go", on_message=lambda m: calls_seen.append(len(backend.calls)))

        # user before any model call; assistant and tool during turn 1; final after turn 2
        assert calls_seen == [0, 1, 1, 2]


class TestHistory:
    async def test_clear_history_keeps_system_prompt(self) -> None:
        agent = Agent(_config(), ScriptedBackend([[text_delta("ok")]]))
        await agent.run("hi")

        agent.clear_history()

        assert _roles(agent.messages) == [MessageRole.SYSTEM]
        assert agent.messages[0].content == "You are a test."

    async def test_history_carries_across_runs(self) -> None:
        backend = ScriptedBackend([[text_delta("one")], [text_delta("two")]])
        agent = Agent(_config(), backend)

        await agent.run("first")
        await agent.run("second")

        assert [m.content for m in backend.calls[1]["messages"]] == ["You are a test.", "first", "one", "second"]


class TestCachedBackend:
    async def test_second_turn_reuses_previous_prompt_and_reply(
        self, fake_tool_transport: FakeToolTransport
    ) -> None:
        reply = '<tool_call>{"name": "read_file", "arguments": {"path": "a.txt"}}</tool_call>'
        backend = CharTokenBackend([reply, "All done."])
        cache = PromptCache()
        agent = Agent(_config(), backend, fake_tool_transport, prompt_cache=cache)

        turns = await agent.run("Read a.txt")

        assert turns == 2
        assert fake_tool_transport.calls == [("read_file", {"path": "a.txt"})]

        first_prompt = ChatMLPromptBuilder().build(agent.messages[:2], fake_tool_transport.tools)
        first_call, second_call = backend.calls
        assert first_call["handle"] is None
        assert len(first_call["tokens"]) == len(first_prompt)

        reused = len(first_prompt) + len(reply)
        assert second_call["handle"] is not None
        second_prompt = ChatMLPromptBuilder().build(agent.messages[:4], fake_tool_transport.tools)
        assert len(second_call["tokens"]) == len(second_prompt) - reused

        stats = agent.cache_stats
        assert (stats.hits, stats.misses, stats.resets) == (1, 1, 2)
        assert agent.messages[-1].content == "All done."

    async def test_cache_covers_prompt_and_raw_reply(self) -> None:
        reply = "<think>x</think>Hello."
        backend = CharTokenBackend([reply])
        cache = PromptCache()
        agent = Agent(_config(), backend, prompt_cache=cache)

        await agent.run("hi")

        prompt_tokens = backend.calls[0]["tokens"]
        assert cache.cached_tokens == prompt_tokens + backend.tokenize(reply)
        assert cache.cached_message_count == 2
        assert agent.messages[-1].content == "Hello."
        assert agent.messages[-1].raw_content == reply

    async def test_clear_history_invalidates_cache(self, fake_tool_transport: FakeToolTransport) -> None:
        call = '<tool_call>{"name": "read_file", "arguments": {}}</tool_call>'
        backend = CharTokenBackend([call, "done", "again"])
        agent = Agent(_config(), backend, fake_tool_transport)

        await agent.run("first")
        agent.clear_history()
        await agent.run("second")

        assert backend.calls[1]["handle"] is not None
        assert backend.calls[2]["handle"] is None
        stats = agent.cache_stats
        assert (stats.hits, stats.misses, stats.resets) == (1, 2, 4)

    async def test_sampling_change_misses_cache(self) -> None:
        cache = PromptCache()
        first = Agent(_config(), CharTokenBackend(["a"]), prompt_cache=cache)
        await first.run("hi")

        second_backend = CharTokenBackend(["b"])
        second = Agent(_config(temperature=0.2), second_backend, prompt_cache=cache)
        await second.run("hi")

        assert second_backend.calls[0]["handle"] is None
        assert cache.stats.misses == 2

    async def test_tokenizer_failure_is_model_backend_error(self) -> None:
        class BrokenTokenizer(CharTokenBackend):
            def tokenize(self, text: str) -> list[int]:
                raise ValueError("bad vocab")

        agent = Agent(_config(), BrokenTokenizer(["x"]))

        with pytest.raises(ModelBackendError, match="bad vocab"):
            await agent.run("hi")

    async def test_clear_cache_resets_stats(self) -> None:
        agent = Agent(_config(), CharTokenBackend(["a", "b"]))
        await agent.run("one")
        await agent.run("two")

        agent.clear_cache()

        assert agent.cache_stats.hits == 0
        assert agent.cache_stats.resets == 0

    async def test_generation_parameters_forwarded(self) -> None:
        backend = CharTokenBackend(["ok"])
        agent = Agent(_config(temperature=0.3, max_tokens=16), backend)

        await agent.run("hi")

        parameters = backend.calls[0]["parameters"]
        assert (parameters.temperature, parameters.max_tokens) == (0.3, 16)

    async def test_failed_stream_rolls_cache_back(self) -> None:
        backend = CharTokenBackend(["first reply", "second reply", "third"], fail_on_turn=1, fail_after=3)
        cache = PromptCache()
        agent = Agent(_config(), backend, prompt_cache=cache)
        await agent.run("one")
        cached_before = cache.cached_tokens

        with pytest.raises(ModelBackendError, match="generation aborted"):
            await agent.run("two")

        handle = backend.calls[1]["handle"]
        assert handle is not None
        assert cache.cached_tokens == cached_before
        assert handle.offset == len(cached_before)

        await agent.run("three")

        third = backend.calls[2]
        prompt = backend.tokenize(ChatMLPromptBuilder().build(agent.messages[:-1], []))
        assert third["handle"] is handle
        assert third["tokens"] == prompt[third["offset_before"]:]
        assert handle.offset == cache.cached_token_count

    async def test_failed_stream_on_untrimmable_handle_drops_slot(self) -> None:
        backend = CharTokenBackend(["first", "second", "third"], trimmable=False, fail_on_turn=1, fail_after=2)
        cache = PromptCache()
        agent = Agent(_config(), backend, prompt_cache=cache)
        await agent.run("one")

        with pytest.raises(ModelBackendError):
            await agent.run("two")

        assert cache.cached_token_count == 0
        assert cache.stats.resets == 2

        await agent.run("three")
        assert backend.calls[2]["handle"] is None

    async def test_cancel_during_cached_stream_rolls_cache_back(self) -> None:
        gate = asyncio.Event()

        class SlowCharBackend(CharTokenBackend):
            async def _stream(self, reply, handle):
                if len(self.calls) != 2:
                    async for chunk in super()._stream(reply, handle):
                        yield chunk
                    return
                handle.advance(1)
                yield GenerationChunk(text=reply[0], token=ord(reply[0]))
                gate.set()
                await asyncio.sleep(10)

        backend = SlowCharBackend(["first", "second", "third"])
        cache = PromptCache()
        agent = Agent(_config(), backend, prompt_cache=cache)
        await agent.run("one")
        cached_before = cache.cached_tokens

        run = asyncio.create_task(agent.run("two"))
        await gate.wait()
        agent.cancel()
        with pytest.raises(AgentCancelledError):
            await run

        handle = backend.calls[1]["handle"]
        assert cache.cached_tokens == cached_before
        assert handle.offset == len(cached_before)

        await agent.run("three")

        third = backend.calls[2]
        prompt = backend.tokenize(ChatMLPromptBuilder().build(agent.messages[:-1], []))
        assert third["tokens"] == prompt[third["offset_before"]:]

    async def test_untrimmable_overrun_is_not_cached(self) -> None:
        class OverrunBackend(CharTokenBackend):
            async def _stream(self, reply, handle):
                async for chunk in super()._stream(reply, handle):
                    yield chunk
                handle.advance(1)
                yield GenerationChunk(text="", token=None)

        backend = OverrunBackend(["first", "second"], trimmable=False)
        cache = PromptCache()
        agent = Agent(_config(), backend, prompt_cache=cache)

        await agent.run("one")
        assert cache.cached_token_count == 0

        await agent.run("two")
        assert backend.calls[1]["handle"] is None

    async def test_trimmable_overrun_is_trimmed_before_caching(self) -> None:
        class OverrunBackend(CharTokenBackend):
            async def _stream(self, reply, handle):
                async for chunk in super()._stream(reply, handle):
                    yield chunk
                handle.advance(1)
                yield GenerationChunk(text="", token=None)

        backend = OverrunBackend(["first"])
        cache = PromptCache()
        agent = Agent(_config(), backend, prompt_cache=cache)

        await agent.run("one")

        assert cache.cached_tokens == backend.calls[0]["tokens"] + backend.tokenize("first")
