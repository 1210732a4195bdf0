"""Tool-call assembly from streamed deltas and raw model text.

Model backends emit tool calls in two shapes:

- Structured deltas (chat-completions style): fragments keyed by a stream
  index whose argument text must be concatenated.
- Inline text: ``<tool_call>{"name": ..., "arguments": ...}</tool_call>``
  blocks inside the generated text (Qwen / Hermes style templates).

Neither shape is guaranteed to be clean. The assembler never raises on
malformed input: a call that cannot be recovered is dropped and logged.
"""

import json
import uuid
from collections.abc import Iterable
from typing import Any

import structlog

from agent_loop.domain.entities import ToolCallRecord
from agent_loop.domain.value_objects import StreamDelta, ToolCallFragment

logger = structlog.get_logger(__name__)

TOOL_CALL_OPEN_TAG = "<tool_call>"
TOOL_CALL_CLOSE_TAG = "</tool_call>"


def new_tool_call_id() -> str:
    """Generate an identifier for a tool call that arrived without one."""
    return f"call_{uuid.uuid4().hex[:24]}"


def find_json_object_end(text: str, start: int) -> int | None:
    """Find the end of the JSON object starting at ``text[start]``.

    Counts brace depth outside string literals. Quotes toggle string state,
    and a backslash inside a string escapes the next character, so braces
    and quotes embedded in string values do not affect the depth.

    Args:
        text: The full text
        start: Position of the opening '{'

    Returns:
        Index just past the matching '}', or None if the object is not
        closed before the end of the text.
    """
    if start >= len(text) or text[start] != "{":
        return None

    depth = 0
    in_string = False
    escape_next = False

    for i in range(start, len(text)):
        char = text[i]

        if escape_next:
            escape_next = False
            continue

        if char == "\\" and in_string:
            escape_next = True
            continue

        if char == '"':
            in_string = not in_string
            continue

        if in_string:
            continue

        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i + 1

    return None


def parse_json_object_at(text: str, start: int) -> tuple[dict[str, Any] | None, int]:
    """Try to parse a JSON object starting at the given position.

    Args:
        text: The full text
        start: Starting position (should be at '{')

    Returns:
        Tuple of (parsed dict or None, end position). The end position is
        ``start`` when nothing could be parsed.
    """
    end = find_json_object_end(text, start)
    if end is None:
        return None, start

    try:
        parsed = json.loads(text[start:end])
    except json.JSONDecodeError:
        return None, start

    if not isinstance(parsed, dict):
        return None, start
    return parsed, end


def normalize_arguments(arguments_text: str) -> str | None:
    """Reduce tool-call argument text to a single JSON object.

    Args:
        arguments_text: Raw argument text as assembled from the stream

    Returns:
        - ``""`` when there are no arguments
        - the JSON object text when it parses as an object
        - the first well-formed object when several objects were
          concatenated without a separator (``{"a":1}{"b":2}``)
        - None when no object can be recovered

    Example:
        >>> normalize_arguments('{"path": "a.txt"}{"path": "b.txt"}')
        '{"path": "a.txt"}'
    """
    stripped = arguments_text.strip()
    if not stripped:
        return ""

    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        parsed = None
    else:
        if isinstance(parsed, dict):
            return stripped
        if parsed is None:
            return ""
        return None

    start = stripped.find("{")
    if start == -1:
        return None

    first, end = parse_json_object_at(stripped, start)
    if first is None:
        return None

    logger.debug(
        "tool_arguments_truncated",
        kept_chars=end - start,
        discarded_chars=len(stripped) - end,
    )
    return stripped[start:end]


def _arguments_to_text(arguments: Any) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments)


def _skip_whitespace(text: str, pos: int) -> int:
    while pos < len(text) and text[pos].isspace():
        pos += 1
    return pos


def extract_tagged_tool_calls(
    text: str,
    open_tag: str = TOOL_CALL_OPEN_TAG,
    close_tag: str = TOOL_CALL_CLOSE_TAG,
) -> list[tuple[str, str]]:
    """Extract ``(name, arguments_text)`` pairs from tagged tool-call blocks.

    Scans left to right. Each open tag is matched with the close tag that
    follows the end of its JSON object, so a close tag inside a string
    value does not terminate the block. Blocks without a parseable object,
    without a string ``name``, or closed only after another open tag are
    skipped. An open tag with no close tag ends the scan.

    Args:
        text: Raw model output
        open_tag: Opening marker
        close_tag: Closing marker

    Returns:
        List of (function name, arguments JSON text), in source order.
    """
    calls: list[tuple[str, str]] = []
    pos = 0

    while True:
        open_at = text.find(open_tag, pos)
        if open_at == -1:
            break

        body_start = open_at + len(open_tag)
        json_start = _skip_whitespace(text, body_start)
        parsed, json_end = parse_json_object_at(text, json_start)

        if parsed is None:
            close_at = text.find(close_tag, body_start)
            if close_at == -1:
                logger.debug("tool_call_unclosed", position=open_at)
                break
            logger.debug("tool_call_unparseable", position=open_at)
            pos = close_at + len(close_tag)
            continue

        close_at = text.find(close_tag, json_end)
        if close_at == -1:
            logger.debug("tool_call_unclosed", position=open_at)
            break

        next_open = text.find(open_tag, json_end)
        if next_open != -1 and next_open < close_at:
            # This block was never closed; resume at the next block.
            logger.debug("tool_call_partially_closed", position=open_at)
            pos = next_open
            continue

        pos = close_at + len(close_tag)

        name = parsed.get("name")
        if not isinstance(name, str) or not name:
            logger.debug("tool_call_missing_name", position=open_at)
            continue

        calls.append((name, _arguments_to_text(parsed.get("arguments"))))

    return calls


class ToolCallAssembler:
    """Rebuilds complete tool calls from one turn's model output.

    Structured fragments are accumulated positionally: the record list is
    extended on first sight of a new stream index, and later fragments for
    the same index append to its argument text. When the stream ends,
    finish() runs the text recovery pass (for backends that emitted calls
    inline) and normalizes every call's arguments.

    Example:
        >>> assembler = ToolCallAssembler()
        >>> assembler.add_fragments([ToolCallFragment(index=0, id="c1", name="add")])
        >>> assembler.add_fragments([ToolCallFragment(index=0, arguments='{"a": 1}')])
        >>> [(c.function_name, c.arguments_text) for c in assembler.finish()]
        [('add', '{"a": 1}')]
    """

    def __init__(
        self,
        open_tag: str = TOOL_CALL_OPEN_TAG,
        close_tag: str = TOOL_CALL_CLOSE_TAG,
    ) -> None:
        self.open_tag = open_tag
        self.close_tag = close_tag
        self._records: list[ToolCallRecord | None] = []

    @property
    def has_structured_calls(self) -> bool:
        """Whether any structured fragment has been received."""
        return any(record is not None for record in self._records)

    def add_delta(self, delta: StreamDelta) -> None:
        """Accumulate the tool-call fragments of a stream delta."""
        if delta.tool_calls:
            self.add_fragments(delta.tool_calls)

    def add_fragments(self, fragments: Iterable[ToolCallFragment]) -> None:
        """Accumulate tool-call fragments by stream index."""
        for fragment in fragments:
            if fragment.index < 0:
                logger.debug("tool_fragment_negative_index", index=fragment.index)
                continue

            if fragment.index >= len(self._records):
                self._records.extend([None] * (fragment.index + 1 - len(self._records)))

            record = self._records[fragment.index]
            if record is None:
                self._records[fragment.index] = ToolCallRecord(
                    stream_index=fragment.index,
                    id=fragment.id,
                    function_name=fragment.name,
                    arguments_text=fragment.arguments,
                )
                continue

            record.append_arguments(fragment.arguments)
            if not record.id and fragment.id:
                record.id = fragment.id
            if not record.function_name and fragment.name:
                record.function_name = fragment.name

    def recover_from_text(self, raw_text: str) -> int:
        """Recover inline tool calls from raw output.

        Args:
            raw_text: Raw concatenated model output

        Returns:
            Number of calls recovered.
        """
        recovered = extract_tagged_tool_calls(raw_text, self.open_tag, self.close_tag)
        for name, arguments in recovered:
            index = len(self._records)
            self._records.append(
                ToolCallRecord(
                    stream_index=index,
                    id=new_tool_call_id(),
                    function_name=name,
                    arguments_text=arguments,
                )
            )
        if recovered:
            logger.debug("tool_calls_recovered_from_text", count=len(recovered))
        return len(recovered)

    def finish(self, raw_text: str = "") -> tuple[ToolCallRecord, ...]:
        """Close the streaming phase and return the complete tool calls.

        Args:
            raw_text: Raw model output, scanned for inline calls when no
                structured fragment arrived

        Returns:
            Complete calls in stream order, each with a function name, an ID
            and arguments that are empty or a single JSON object.
        """
        if not self.has_structured_calls and raw_text and self.open_tag in raw_text:
            self.recover_from_text(raw_text)

        calls: list[ToolCallRecord] = []
        for record in self._records:
            if record is None:
                continue

            if not record.function_name:
                logger.warning("tool_call_dropped", reason="missing_name", index=record.stream_index)
                continue

            arguments = normalize_arguments(record.arguments_text)
            if arguments is None:
                logger.warning(
                    "tool_call_dropped",
                    reason="malformed_arguments",
                    tool=record.function_name,
                    index=record.stream_index,
                )
                continue

            record.arguments_text = arguments
            if not record.id:
                record.id = new_tool_call_id()
            calls.append(record)

        return tuple(calls)
