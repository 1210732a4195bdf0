"""Outbound port interfaces (driven adapters).

These ports define the contracts for the application core to interact
with external systems (infrastructure). Implementations are provided by
outbound adapters (MLX backend, MCP tool servers, etc.).

All interfaces use Protocol (PEP 544) for structural typing, allowing
implicit implementation without inheritance.
"""

from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

from agent_loop.domain.entities import Message
from agent_loop.domain.value_objects import (
    ContentBlock,
    GenerationChunk,
    GenerationParameters,
    StreamDelta,
    ToolSpec,
)


@runtime_checkable
class ModelBackendPort(Protocol):
    """Port for a chat-completions style model backend.

    The backend receives the whole conversation and streams incremental
    output. It owns tokenization and any caching it performs.
    """

    def complete(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        temperature: float,
        max_tokens: int | None = None,
        top_p: float | None = None,
        repetition_penalty: float | None = None,
        repetition_context_size: int | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream a completion for the conversation.

        Args:
            messages: Full conversation, oldest first.
            tools: Tool catalog available this turn.
            temperature: Sampling temperature.
            max_tokens: Optional response token limit.
            top_p: Optional nucleus sampling parameter.
            repetition_penalty: Optional repetition penalty.
            repetition_context_size: Optional repetition penalty window.

        Returns:
            Async iterator of StreamDelta, ending at end-of-stream.

        Raises:
            Exception: Any failure while streaming (wrapped by the agent).
        """
        ...


@runtime_checkable
class CacheHandlePort(Protocol):
    """Port for an engine-owned, partially computed generation state."""

    @property
    def is_trimmable(self) -> bool:
        """Whether trailing positions can be dropped from the handle."""
        ...

    @property
    def offset(self) -> int:
        """Number of token positions the handle has been advanced to."""
        ...

    def trim(self, n: int) -> int:
        """Drop the last n positions.

        Args:
            n: Number of positions to drop.

        Returns:
            Number of positions actually dropped.
        """
        ...


@runtime_checkable
class CachingModelBackendPort(Protocol):
    """Port for a backend that exposes tokenization and a reusable cache.

    The agent builds the prompt text, tokenizes it, decides which prefix can
    be reused and only asks the backend to process the remaining tokens.
    """

    @property
    def model_id(self) -> str:
        """Identifier of the loaded model."""
        ...

    def tokenize(self, text: str) -> list[int]:
        """Encode prompt text to token IDs."""
        ...

    async def process_and_cache(
        self,
        tokens: list[int],
        handle: Any | None,
        parameters: GenerationParameters,
    ) -> tuple[AsyncIterator[GenerationChunk], CacheHandlePort]:
        """Process tokens on top of an optional handle and stream generation.

        Args:
            tokens: Tokens not yet covered by the handle.
            handle: Reusable handle from a previous generation, or None.
            parameters: Sampling parameters.

        Returns:
            Tuple of (chunk stream, handle advanced by this generation).

        Raises:
            Exception: Any engine failure (wrapped by the agent).
        """
        ...


class ToolTransportPort(Protocol):
    """Port for listing and invoking external tools."""

    async def list_tools(self) -> list[ToolSpec]:
        """List currently available tools.

        Raises:
            ToolTransportError: If the catalog cannot be fetched.
        """
        ...

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> list[ContentBlock]:
        """Invoke a tool.

        Args:
            name: Tool name.
            arguments: Decoded JSON arguments, or None when the call has none.

        Returns:
            Content blocks of the tool result.

        Raises:
            ToolInvocationError: If the call fails.
        """
        ...
