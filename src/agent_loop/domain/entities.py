"""Domain entities for conversations.

Entities have identity: two messages with identical text are still distinct
turns of the conversation. Messages are immutable once created; tool-call
records are mutable only while the model stream that produces them is open.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class MessageRole(str, Enum):
    """Author of a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


def _new_message_id() -> str:
    return str(uuid.uuid4())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    """A single conversation turn.

    Attributes:
        role: Author of the message
        content: Display content (reasoning markup already stripped)
        raw_content: Unfiltered model output, fed back into tokenization
            so that the next prompt shares its prefix with the cached one
        tool_call_id: ID of the tool call this message answers (tool role)
        tool_name: Name of the tool that produced this message (tool role)
        id: Unique message identifier
        timestamp: Creation time (UTC)

    Example:
        >>> msg = Message(role=MessageRole.ASSISTANT, content="4",
        ...               raw_content="<think>2+2</think>4")
        >>> msg.tokenizable_content
        '<think>2+2</think>4'
    """

    role: MessageRole
    content: str
    raw_content: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    id: str = field(default_factory=_new_message_id)
    timestamp: datetime = field(default_factory=_utc_now)

    @property
    def tokenizable_content(self) -> str:
        """Text used when rebuilding the prompt for this message."""
        return self.raw_content if self.raw_content is not None else self.content

    def to_openai_format(self) -> dict[str, Any]:
        """Convert to a chat-completions message mapping."""
        payload: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
        }
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_name is not None:
            payload["name"] = self.tool_name
        return payload


@dataclass
class ToolCallRecord:
    """Tool call under construction from streamed deltas.

    Several deltas with the same stream_index concatenate into
    arguments_text. The record lives for one streaming phase and is
    discarded once converted into a tool message.

    Attributes:
        stream_index: Position of the call in the model's output
        id: Tool call identifier (echoed back in the tool message)
        function_name: Name of the tool to invoke
        arguments_text: JSON object text (possibly still partial)
    """

    stream_index: int
    id: str = ""
    function_name: str = ""
    arguments_text: str = ""

    def append_arguments(self, fragment: str) -> None:
        """Append a streamed argument fragment."""
        self.arguments_text += fragment
