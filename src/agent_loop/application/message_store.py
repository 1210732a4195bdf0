"""Append-only conversation log."""

from collections.abc import Iterable, Iterator

from agent_loop.domain.entities import Message, MessageRole


class MessageStore:
    """Ordered, append-only log of conversation messages.

    The store is the single source of truth for prompt rebuilding. Messages
    are never mutated or removed individually; the only pruning operation
    is clear(), which keeps system messages.

    Example:
        >>> store = MessageStore([Message(role=MessageRole.SYSTEM, content="Be brief.")])
        >>> store.append(Message(role=MessageRole.USER, content="Hi"))
        >>> len(store)
        2
        >>> store.clear()
        >>> [m.role for m in store]
        [<MessageRole.SYSTEM: 'system'>]
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = list(messages)

    def append(self, message: Message) -> None:
        """Append a message at the end of the log."""
        self._messages.append(message)

    def all(self) -> tuple[Message, ...]:
        """Return the full ordered history as an immutable snapshot."""
        return tuple(self._messages)

    def clear(self) -> None:
        """Remove every message except system messages."""
        self._messages = [m for m in self._messages if m.role == MessageRole.SYSTEM]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))
