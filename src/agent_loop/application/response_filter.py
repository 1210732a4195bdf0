"""Post-processing of raw model text.

Reasoning models wrap their scratch work in ``<think>...</think>``. That
text must not reach the user or the stored display content, but it must be
kept verbatim as raw content: the next prompt is rebuilt from raw content,
and any difference from the generated text would break the cached prefix.
"""

from dataclasses import dataclass

from agent_loop.application.tool_call_assembler import TOOL_CALL_OPEN_TAG

THINK_OPEN_TAG = "<think>"
THINK_CLOSE_TAG = "</think>"


@dataclass(frozen=True)
class FilteredResponse:
    """Raw model output split into its parts.

    Attributes:
        display_text: Prose shown to the user (reasoning removed, trimmed)
        tool_text: Text from the first tool-call tag onward ("" if none)
        raw_text: The unfiltered output
    """

    display_text: str
    tool_text: str
    raw_text: str

    @property
    def has_tool_text(self) -> bool:
        return bool(self.tool_text)


class ResponseFilter:
    """Removes reasoning markup and separates prose from tool-call text.

    Example:
        >>> f = ResponseFilter()
        >>> parts = f.split("<think>user wants a file</think>Reading it.<tool_call>{}</tool_call>")
        >>> parts.display_text, parts.tool_text
        ('Reading it.', '<tool_call>{}</tool_call>')
    """

    def __init__(
        self,
        think_open: str = THINK_OPEN_TAG,
        think_close: str = THINK_CLOSE_TAG,
        tool_open: str = TOOL_CALL_OPEN_TAG,
    ) -> None:
        self.think_open = think_open
        self.think_close = think_close
        self.tool_open = tool_open

    def strip_reasoning(self, text: str) -> str:
        """Remove every balanced reasoning region.

        Regions are removed left to right: each open tag is paired with the
        first close tag after it. An open tag without a later close tag is
        left in place, as is a stray close tag.
        """
        result = text
        search_from = 0
        while True:
            start = result.find(self.think_open, search_from)
            if start == -1:
                break
            end = result.find(self.think_close, start + len(self.think_open))
            if end == -1:
                break
            result = result[:start] + result[end + len(self.think_close):]
            search_from = start
        return result

    def split(self, raw_text: str) -> FilteredResponse:
        """Split raw output into display prose and tool-call text.

        Only the text before the first tool-call tag is kept as display
        content; everything from the tag onward belongs to the assembler.
        """
        tool_at = raw_text.find(self.tool_open)
        if tool_at == -1:
            prose, tool_text = raw_text, ""
        else:
            prose, tool_text = raw_text[:tool_at], raw_text[tool_at:]

        return FilteredResponse(
            display_text=self.strip_reasoning(prose).strip(),
            tool_text=tool_text,
            raw_text=raw_text,
        )
