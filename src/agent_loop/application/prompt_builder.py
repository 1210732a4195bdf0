"""ChatML prompt rendering for cache-capable backends.

The prompt is rebuilt from the message store on every turn. It must be
byte-stable: the same history and tool catalog always render to the same
text, otherwise the token prefix shared with the cached prompt is lost.
Tools are therefore sorted by name and serialized as canonical JSON, and
messages render their tokenizable (raw) content.
"""

import json
from collections.abc import Sequence

from agent_loop.domain.entities import Message, MessageRole
from agent_loop.domain.value_objects import ToolSpec

IM_START = "<|im_start|>"
IM_END = "<|im_end|>"

TOOLS_PREAMBLE = (
    "\n\n# Tools\n\n"
    "You may call one or more functions to assist with the user query.\n\n"
    "You are provided with function signatures within <tools></tools> XML tags:\n"
)
TOOL_CALL_INSTRUCTIONS = (
    "For each function call, return a json object with function name and "
    "arguments within <tool_call></tool_call> XML tags:\n"
    "<tool_call>\n"
    '{"name": <function-name>, "arguments": <args-json-object>}\n'
    "</tool_call>"
)


def canonical_json(value: object) -> str:
    """Serialize with sorted keys and compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class ChatMLPromptBuilder:
    """Renders a conversation in the Qwen / Hermes ChatML template.

    Tool results are sent back as user turns wrapped in
    ``<tool_response>`` tags, which is what the template's models are
    trained on. The prompt always ends with an open assistant turn.
    """

    def render_tools(self, tools: Sequence[ToolSpec]) -> str:
        """One canonical JSON definition per line, sorted by tool name."""
        ordered = sorted(tools, key=lambda tool: tool.name)
        return "\n".join(canonical_json(tool.to_chat_tool()) for tool in ordered)

    def build(self, messages: Sequence[Message], tools: Sequence[ToolSpec] = ()) -> str:
        """Render the full prompt text.

        Only the first system message is rendered; the tools section is
        attached to it, so a conversation without a system message is sent
        without a tool catalog.

        Args:
            messages: Conversation, oldest first
            tools: Tool catalog for this turn

        Returns:
            Prompt text ending with an open assistant turn.
        """
        parts: list[str] = []

        system = next((m for m in messages if m.role == MessageRole.SYSTEM), None)
        if system is not None:
            parts.append(f"{IM_START}system\n{system.tokenizable_content}")
            if tools:
                parts.append(TOOLS_PREAMBLE)
                parts.append(f"<tools>\n{self.render_tools(tools)}\n</tools>\n\n")
                parts.append(TOOL_CALL_INSTRUCTIONS)
            parts.append(f"{IM_END}\n")

        for message in messages:
            if message.role == MessageRole.USER:
                parts.append(f"{IM_START}user\n{message.tokenizable_content}{IM_END}\n")
            elif message.role == MessageRole.ASSISTANT:
                parts.append(f"{IM_START}assistant\n{message.tokenizable_content}{IM_END}\n")
            elif message.role == MessageRole.TOOL:
                parts.append(
                    f"{IM_START}user\n<tool_response>\n"
                    f"{message.tokenizable_content}\n</tool_response>{IM_END}\n"
                )

        parts.append(f"{IM_START}assistant\n")
        return "".join(parts)
