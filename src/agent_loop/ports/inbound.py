"""Inbound port interfaces (driving adapters).

These ports define how callers (CLI, embedding applications) drive the
agent. The observer callback is the conversation's only incremental signal:
it receives every appended message once, in append order.
"""

from collections.abc import Awaitable, Callable
from typing import Protocol

from agent_loop.domain.entities import Message

MessageObserver = Callable[[Message], Awaitable[None] | None]


class AgentPort(Protocol):
    """Port for driving a conversation."""

    async def run(self, user_input: str, on_message: MessageObserver | None = None) -> int:
        """Process one user message through as many turns as needed.

        Args:
            user_input: The user's message.
            on_message: Optional observer invoked for each appended message.

        Returns:
            Number of model turns executed.

        Raises:
            AlreadyRunningError: If a run is already active.
            AgentCancelledError: If the run was cancelled.
            ModelBackendError: If the model stream failed.
        """
        ...

    def cancel(self) -> None:
        """Cancel the active run, if any."""
        ...

    @property
    def messages(self) -> tuple[Message, ...]:
        """Snapshot of the conversation history."""
        ...

    def clear_history(self) -> None:
        """Drop every message except system messages."""
        ...
