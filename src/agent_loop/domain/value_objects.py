"""Domain value objects (immutable data structures).

Value objects are immutable data structures that represent concepts
from the domain model. They have no identity - two instances with
the same values are considered equal.
"""

from dataclasses import dataclass, field
from typing import Any

from agent_loop.domain.errors import ConfigurationError

DEFAULT_SYSTEM_PROMPT = (
    "You are an intelligent assistant. Use the available tools to help answer "
    "questions and complete tasks. Think step by step and use tools when needed. "
    "Be concise and helpful."
)

DEFAULT_TOP_P = 0.95


@dataclass(frozen=True)
class AgentConfiguration:
    """Agent behavior and sampling parameters.

    Attributes:
        model: Model identifier (e.g. "mlx-community/Qwen3-4B-4bit")
        provider: Backend family ("mlx" for local MLX models)
        system_prompt: Instructions placed at the start of the conversation
        max_turns: Maximum model turns per run (liveness guard for tool loops)
        temperature: Sampling temperature (0.0 = deterministic)
        max_tokens: Optional token limit per response
        top_p: Optional nucleus sampling parameter
        repetition_penalty: Optional repetition penalty
        repetition_context_size: Optional context window for the penalty

    Example:
        >>> config = AgentConfiguration(model="mlx-community/Qwen3-4B-4bit")
        >>> config.model_key
        'mlx-community/Qwen3-4B-4bit-0.7-0.95'
    """

    model: str
    provider: str = "mlx"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_turns: int = 10
    temperature: float = 0.7
    max_tokens: int | None = None
    top_p: float | None = None
    repetition_penalty: float | None = None
    repetition_context_size: int | None = None

    def __post_init__(self) -> None:
        if self.max_turns < 1:
            raise ConfigurationError(f"max_turns must be >= 1, got {self.max_turns}")
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError(
                f"temperature must be in [0.0, 2.0], got {self.temperature}"
            )
        if self.max_tokens is not None and self.max_tokens < 1:
            raise ConfigurationError(f"max_tokens must be >= 1, got {self.max_tokens}")

    @property
    def model_key(self) -> str:
        """Key of the (model, sampling) combination a prompt cache is valid for."""
        top_p = self.top_p if self.top_p is not None else DEFAULT_TOP_P
        return f"{self.model}-{self.temperature}-{top_p}"

    def generation_parameters(self) -> "GenerationParameters":
        """Sampling parameters handed to a cache-capable backend."""
        return GenerationParameters(
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            repetition_penalty=self.repetition_penalty,
            repetition_context_size=self.repetition_context_size,
        )


@dataclass(frozen=True)
class GenerationParameters:
    """Sampling parameters for one generation call."""

    max_tokens: int | None = None
    temperature: float = 0.7
    top_p: float | None = None
    repetition_penalty: float | None = None
    repetition_context_size: int | None = None


@dataclass(frozen=True)
class ToolSpec:
    """A tool advertised by a tool transport.

    Attributes:
        name: Tool name used in tool calls
        description: Human-readable description shown to the model
        parameters: JSON schema of the tool arguments
    """

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_chat_tool(self) -> dict[str, Any]:
        """Chat-completions style function definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {},
            },
        }


def estimate_base64_size(data: str) -> int:
    """Decoded byte size of a base64 payload (data URLs allowed)."""
    payload = data.split(",")[-1]
    padding = payload[-2:].count("=")
    return (len(payload) * 3) // 4 - padding


@dataclass(frozen=True)
class ContentBlock:
    """One block of a tool result.

    Attributes:
        type: "text", "image", "audio" or "resource"
        text: Text payload (text blocks, embedded text resources)
        data: Base64 payload (image and audio blocks)
        mime_type: MIME type of binary or resource payloads
        uri: Resource URI
    """

    type: str
    text: str | None = None
    data: str | None = None
    mime_type: str | None = None
    uri: str | None = None

    def render(self) -> str:
        """Textual form of the block as stored in a tool message."""
        if self.type == "text":
            return self.text or ""
        if self.type == "image":
            return f"[Image: {self.mime_type}, {estimate_base64_size(self.data or '')} bytes]"
        if self.type == "audio":
            return f"[Audio: {self.mime_type}, {estimate_base64_size(self.data or '')} bytes]"
        if self.type == "resource":
            if self.text is not None:
                return self.text
            return f"[Resource: {self.uri}, {self.mime_type}]"
        return self.text or f"[{self.type}]"


def render_content_blocks(blocks: list[ContentBlock]) -> str:
    """Join the textual forms of a tool result's blocks."""
    return "\n".join(block.render() for block in blocks)


@dataclass(frozen=True)
class ToolCallFragment:
    """Streamed piece of a tool call.

    Attributes:
        index: Position of the call in the model output
        id: Call identifier (usually only on the first fragment)
        name: Function name (usually only on the first fragment)
        arguments: Argument text fragment to append
    """

    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass(frozen=True)
class StreamDelta:
    """Incremental output of a model backend.

    Attributes:
        text: Display text to append (None when the delta carries no text)
        tool_calls: Tool-call fragments carried by this delta
        raw_text: Unfiltered output so far; replaces any earlier raw_text
        finish_reason: "stop", "length" or "tool_calls" on the final delta
    """

    text: str | None = None
    tool_calls: tuple[ToolCallFragment, ...] = ()
    raw_text: str | None = None
    finish_reason: str | None = None


@dataclass(frozen=True)
class GenerationChunk:
    """One decoded step of a cache-capable backend.

    Attributes:
        text: Detokenized text segment for this step
        token: Generated token ID (None for a flush-only segment)
    """

    text: str
    token: int | None = None
