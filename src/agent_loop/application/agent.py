"""Agent turn loop.

The Agent owns one conversation. A call to run() appends the user message
and then alternates model turns and tool executions until the model stops
asking for tools or max_turns is reached.

Concurrency model: all conversation state (message store, prompt cache,
state enum) is mutated only from the conversation task started by run().
run() rejects re-entry while that task is alive, so there is exactly one
writer at any time and no locks are needed.
"""

import asyncio
import inspect
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from agent_loop.application.message_store import MessageStore
from agent_loop.application.prompt_builder import ChatMLPromptBuilder
from agent_loop.application.prompt_cache import CacheLookup, CacheStats, PromptCache
from agent_loop.application.response_filter import ResponseFilter
from agent_loop.application.tool_call_assembler import ToolCallAssembler
from agent_loop.domain.entities import Message, MessageRole, ToolCallRecord
from agent_loop.domain.errors import (
    AgentCancelledError,
    AgentError,
    AlreadyRunningError,
    ModelBackendError,
    ToolInvocationError,
)
from agent_loop.domain.value_objects import (
    AgentConfiguration,
    ToolSpec,
    render_content_blocks,
)
from agent_loop.ports.inbound import MessageObserver
from agent_loop.ports.outbound import (
    CachingModelBackendPort,
    ModelBackendPort,
    ToolTransportPort,
)

logger = structlog.get_logger(__name__)


class AgentState(str, Enum):
    """Lifecycle of a run."""

    IDLE = "idle"
    RUNNING = "running"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"


@dataclass
class _TurnOutput:
    """Accumulated output of one model turn.

    text is the display stream (reasoning and tool text not yet removed);
    raw_text is the unfiltered output fed back into the next prompt.
    """

    text: str
    raw_text: str
    assembler: ToolCallAssembler


class Agent:
    """Drives a conversation between a user, a model backend and tools.

    The backend is either a plain streaming backend (ModelBackendPort) or a
    cache-capable one (CachingModelBackendPort). With a cache-capable
    backend the agent renders and tokenizes the prompt itself and reuses
    the shared prefix through its PromptCache.

    Example:
        agent = Agent(AgentConfiguration(model="qwen"), backend, tool_transport)
        turns = await agent.run("What's 2+2?", on_message=print)
    """

    def __init__(
        self,
        configuration: AgentConfiguration,
        backend: ModelBackendPort | CachingModelBackendPort,
        tool_transport: ToolTransportPort | None = None,
        prompt_cache: PromptCache | None = None,
        prompt_builder: ChatMLPromptBuilder | None = None,
        response_filter: ResponseFilter | None = None,
    ) -> None:
        self.configuration = configuration
        self._backend = backend
        self._tool_transport = tool_transport
        self._prompt_cache = prompt_cache or PromptCache()
        self._prompt_builder = prompt_builder or ChatMLPromptBuilder()
        self._response_filter = response_filter or ResponseFilter()

        self._store = MessageStore(
            [Message(role=MessageRole.SYSTEM, content=configuration.system_prompt)]
        )
        self._state = AgentState.IDLE
        self._task: asyncio.Task[int] | None = None
        self._cancel_requested = False

        logger.info(
            "agent_created",
            model=configuration.model,
            provider=configuration.provider,
            max_turns=configuration.max_turns,
            caching=self._uses_prompt_cache,
        )

    @property
    def _uses_prompt_cache(self) -> bool:
        return isinstance(self._backend, CachingModelBackendPort)

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state != AgentState.IDLE

    @property
    def messages(self) -> tuple[Message, ...]:
        """Snapshot of the conversation history."""
        return self._store.all()

    @property
    def cache_stats(self) -> CacheStats:
        return self._prompt_cache.stats

    def clear_history(self) -> None:
        """Drop every message except system messages.

        The prompt cache is left alone; the next lookup sees a shorter
        conversation and invalidates it.
        """
        if self.is_running:
            raise AlreadyRunningError("Cannot clear history while a run is active")
        self._store.clear()

    def clear_cache(self) -> None:
        """Drop the cached prompt state and reset its statistics."""
        if self.is_running:
            raise AlreadyRunningError("Cannot clear the cache while a run is active")
        self._prompt_cache.clear()

    def cancel(self) -> None:
        """Cancel the active run, if any."""
        if self._task is None or self._task.done():
            return
        logger.info("agent_cancel_requested")
        self._cancel_requested = True
        self._task.cancel()

    async def run(self, user_input: str, on_message: MessageObserver | None = None) -> int:
        """Process one user message through as many turns as needed.

        Args:
            user_input: The user's message
            on_message: Observer called once per appended message, in
                append order, before the loop continues. May be a plain
                function or a coroutine function.

        Returns:
            Number of model turns executed.

        Raises:
            AlreadyRunningError: If a run is already active
            AgentCancelledError: If cancel() was called during the run
            ModelBackendError: If the model backend failed
        """
        if self.is_running:
            raise AlreadyRunningError("Agent is already running")

        self._state = AgentState.RUNNING
        self._cancel_requested = False
        task = asyncio.ensure_future(self._run_conversation(user_input, on_message))
        self._task = task

        try:
            return await task
        except asyncio.CancelledError as exc:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            raise AgentCancelledError("Agent run was cancelled") from exc
        finally:
            self._state = AgentState.IDLE

    def _check_cancelled(self) -> None:
        if self._cancel_requested:
            raise asyncio.CancelledError()

    async def _append(self, message: Message, on_message: MessageObserver | None) -> None:
        self._store.append(message)
        if on_message is not None:
            result = on_message(message)
            if inspect.isawaitable(result):
                await result

    async def _run_conversation(
        self,
        user_input: str,
        on_message: MessageObserver | None,
    ) -> int:
        await self._append(Message(role=MessageRole.USER, content=user_input), on_message)

        max_turns = self.configuration.max_turns
        turn_count = 0
        should_continue = True

        while should_continue and turn_count < max_turns:
            self._check_cancelled()

            tools = await self._list_tools()
            logger.debug("turn_started", turn=turn_count + 1, tools=len(tools))

            self._state = AgentState.STREAMING
            output = await self._stream_turn(tools)

            display_text = self._response_filter.split(output.text).display_text
            tool_calls = output.assembler.finish(output.raw_text)

            if display_text or tool_calls:
                raw_content = output.raw_text if output.raw_text != display_text else None
                await self._append(
                    Message(
                        role=MessageRole.ASSISTANT,
                        content=display_text,
                        raw_content=raw_content,
                    ),
                    on_message,
                )

            if tool_calls:
                self._state = AgentState.EXECUTING_TOOLS
                logger.info("tool_calls_processing", count=len(tool_calls))
                for call in tool_calls:
                    self._check_cancelled()
                    await self._append(await self._execute_tool_call(call), on_message)
                    self._check_cancelled()
            else:
                should_continue = False

            self._state = AgentState.RUNNING
            turn_count += 1

        if should_continue:
            logger.warning("max_turns_exceeded", max_turns=max_turns)

        logger.info("agent_run_complete", turns=turn_count, messages=len(self._store))
        return turn_count

    async def _list_tools(self) -> list[ToolSpec]:
        if self._tool_transport is None:
            return []
        try:
            return list(await self._tool_transport.list_tools())
        except Exception as exc:
            logger.warning("tool_listing_failed", error=str(exc))
            return []

    async def _stream_turn(self, tools: list[ToolSpec]) -> _TurnOutput:
        try:
            if self._uses_prompt_cache:
                return await self._stream_cached_turn(tools)
            return await self._stream_plain_turn(tools)
        except AgentError:
            raise
        except Exception as exc:
            logger.error("model_stream_failed", error=str(exc))
            raise ModelBackendError(f"Model backend failed: {exc}") from exc

    async def _stream_plain_turn(self, tools: list[ToolSpec]) -> _TurnOutput:
        backend: ModelBackendPort = self._backend  # type: ignore[assignment]
        config = self.configuration
        assembler = ToolCallAssembler()
        text_parts: list[str] = []
        raw_text = ""

        stream = backend.complete(
            messages=list(self._store.all()),
            tools=tools,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            top_p=config.top_p,
            repetition_penalty=config.repetition_penalty,
            repetition_context_size=config.repetition_context_size,
        )
        async for delta in stream:
            self._check_cancelled()
            if delta.text:
                text_parts.append(delta.text)
            if delta.raw_text is not None:
                raw_text = delta.raw_text
            assembler.add_delta(delta)

        text = "".join(text_parts)
        return _TurnOutput(text=text, raw_text=raw_text or text, assembler=assembler)

    async def _stream_cached_turn(self, tools: list[ToolSpec]) -> _TurnOutput:
        backend: CachingModelBackendPort = self._backend  # type: ignore[assignment]
        config = self.configuration
        cache = self._prompt_cache
        messages = self._store.all()
        message_count = len(messages)

        prompt = self._prompt_builder.build(messages, tools)
        prompt_tokens = backend.tokenize(prompt)

        cache.invalidate_if_conversation_shrank(message_count)
        lookup = cache.lookup(config.model_key, prompt_tokens)
        logger.debug(
            "prompt_prepared",
            prompt_tokens=len(prompt_tokens),
            reused_tokens=lookup.reused_tokens,
            to_process=len(lookup.tokens_to_process),
        )

        try:
            chunks, handle = await backend.process_and_cache(
                lookup.tokens_to_process,
                lookup.handle,
                config.generation_parameters(),
            )

            text_parts: list[str] = []
            generated: list[int] = []
            async for chunk in chunks:
                self._check_cancelled()
                text_parts.append(chunk.text)
                if chunk.token is not None:
                    generated.append(chunk.token)
        except BaseException:
            self._roll_back_cache(lookup)
            raise

        self._update_cache(prompt_tokens + generated, handle, message_count)

        raw_text = "".join(text_parts)
        return _TurnOutput(text=raw_text, raw_text=raw_text, assembler=ToolCallAssembler())

    def _roll_back_cache(self, lookup: CacheLookup) -> None:
        """Restore the slot after a generation that did not finish.

        Only a hit hands the slot's own handle to the backend. That handle is
        trimmed back to the reused prefix, or the slot is dropped.
        """
        handle = lookup.handle
        if handle is None:
            return

        excess = handle.offset - lookup.reused_tokens
        if excess > 0 and handle.is_trimmable and handle.trim(excess) == excess:
            logger.debug("prompt_cache_rolled_back", trimmed=excess, cached_tokens=handle.offset)
            return
        if excess > 0:
            self._prompt_cache.discard("generation_aborted")

    def _update_cache(self, tokens: list[int], handle: Any, message_count: int) -> None:
        offset = handle.offset
        if offset > len(tokens) and handle.is_trimmable:
            handle.trim(offset - len(tokens))
            offset = handle.offset
        if offset > len(tokens):
            # The handle holds positions with no recorded token.
            self._prompt_cache.discard("handle_overrun")
            return
        self._prompt_cache.update(
            self.configuration.model_key,
            tokens[:offset],
            handle,
            message_count,
        )

    async def _execute_tool_call(self, call: ToolCallRecord) -> Message:
        name = call.function_name
        logger.info("tool_executing", tool=name, call_id=call.id)
        logger.debug("tool_arguments", tool=name, arguments=call.arguments_text)

        try:
            if self._tool_transport is None:
                raise ToolInvocationError("no tool transport is configured")
            arguments = json.loads(call.arguments_text) if call.arguments_text else None
            blocks = await self._tool_transport.call_tool(name, arguments)
            content = render_content_blocks(blocks)
        except Exception as exc:
            logger.error("tool_execution_failed", tool=name, error=str(exc))
            content = f"Error executing tool '{name}': {exc}"

        return Message(
            role=MessageRole.TOOL,
            content=content,
            tool_call_id=call.id,
            tool_name=name,
        )
