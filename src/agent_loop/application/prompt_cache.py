"""Single-slot prompt cache with prefix matching and trim-based reuse.

Each turn of a conversation re-sends the whole history. Most of that prompt
is identical to the previous turn's prompt, so the engine state computed for
it (the KV cache handle) can be reused and only the new suffix processed.

Architecture layer: application service.
No MLX / infrastructure imports - cache handles are opaque objects exposing
``is_trimmable``, ``trim(n)`` and ``offset`` (see CacheHandlePort).

Concurrency: the cache is owned by one Agent and only touched from its
conversation task, so it takes no locks.
"""

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_FRESHNESS_SECONDS = 1800.0
STATS_LOG_INTERVAL = 10


def common_prefix_length(tokens_a: Sequence[int], tokens_b: Sequence[int]) -> int:
    """Count leading tokens shared by two sequences."""
    limit = min(len(tokens_a), len(tokens_b))
    for i in range(limit):
        if tokens_a[i] != tokens_b[i]:
            return i
    return limit


@dataclass
class CacheStats:
    """Accumulating prompt cache counters.

    Attributes:
        hits: Lookups that reused the cached prefix (full or trimmed)
        misses: Lookups that reused nothing
        partial_hits: Lookups whose shared prefix was shorter than the cache
        resets: Times the slot was replaced or dropped for a shorter conversation
        trims: Times the handle was shrunk to the shared prefix
    """

    hits: int = 0
    misses: int = 0
    partial_hits: int = 0
    resets: int = 0
    trims: int = 0

    @property
    def lookups(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups that reused cached tokens (0.0 before any lookup)."""
        total = self.lookups
        return self.hits / total if total > 0 else 0.0


@dataclass
class CacheEntry:
    """The single reusable context.

    Attributes:
        model_key: (model, sampling) combination the handle was built under
        cached_tokens: Tokens the handle has been advanced over
        handle: Opaque engine cache handle
        last_message_count: Conversation length when the entry was built
        created_at: Creation time (cache clock)
        last_accessed_at: Last lookup touching this entry (cache clock)
    """

    model_key: str
    cached_tokens: list[int]
    handle: Any
    last_message_count: int
    created_at: float
    last_accessed_at: float = field(default=0.0)

    def mark_accessed(self, now: float) -> None:
        """Slide the expiry window forward."""
        self.last_accessed_at = now

    def is_fresh(self, now: float, freshness_seconds: float) -> bool:
        return now - self.last_accessed_at < freshness_seconds


@dataclass(frozen=True)
class CacheLookup:
    """Outcome of a prompt cache lookup.

    Attributes:
        tokens_to_process: Suffix of the prompt the engine must still process
        handle: Handle to continue from, or None to start fresh
        reused_tokens: Number of leading prompt tokens covered by the handle
        cached_message_count: Conversation length the handle was built from
    """

    tokens_to_process: list[int]
    handle: Any | None = None
    reused_tokens: int = 0
    cached_message_count: int = 0

    @property
    def is_hit(self) -> bool:
        return self.handle is not None


class PromptCache:
    """Tracks one reusable (tokens, handle) pair and decides how much to reuse.

    Lookup outcomes for a new prompt:

    - miss: no entry, different model key, expired entry, or no shared prefix
    - full hit: the whole cached sequence is a prefix of the new prompt
    - trimmed hit: the prompt diverges inside the cached sequence and the
      handle can be trimmed back to the shared prefix
    - miss: the prompt diverges inside the cached sequence and the handle
      cannot be trimmed

    The shared prefix is clamped to ``len(new_tokens) - 1``: the final
    prompt token is always processed fresh so generation has a step to
    start from.

    The slot only stores a handle whose ``offset`` equals the number of
    cached tokens. An entry found out of sync on lookup is dropped.

    Example:
        cache = PromptCache()
        lookup = cache.lookup(model_key, prompt_tokens)
        chunks, handle = await backend.process_and_cache(
            lookup.tokens_to_process, lookup.handle, parameters
        )
        generated = [chunk.token async for chunk in chunks if chunk.token is not None]
        cache.update(model_key, prompt_tokens + generated, handle, message_count)
    """

    def __init__(
        self,
        freshness_seconds: float = DEFAULT_FRESHNESS_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.freshness_seconds = freshness_seconds
        self._clock = clock
        self._entry: CacheEntry | None = None
        self._stats = CacheStats()

    @property
    def stats(self) -> CacheStats:
        """Snapshot of the counters."""
        return replace(self._stats)

    @property
    def has_valid_entry(self) -> bool:
        """Whether a fresh entry is available."""
        return self._entry is not None and self._entry.is_fresh(
            self._clock(), self.freshness_seconds
        )

    @property
    def cached_tokens(self) -> list[int]:
        """Copy of the tokens covered by the cached handle."""
        return list(self._entry.cached_tokens) if self._entry is not None else []

    @property
    def cached_token_count(self) -> int:
        return len(self._entry.cached_tokens) if self._entry is not None else 0

    @property
    def cached_message_count(self) -> int:
        return self._entry.last_message_count if self._entry is not None else 0

    def lookup(self, model_key: str, new_tokens: Sequence[int]) -> CacheLookup:
        """Decide how much of ``new_tokens`` the cached handle covers.

        Args:
            model_key: Key of the model and sampling parameters in use
            new_tokens: Full tokenized prompt

        Returns:
            CacheLookup with the tokens still to process and the handle to
            continue from (None on a miss).
        """
        new_tokens = list(new_tokens)
        try:
            return self._lookup(model_key, new_tokens)
        finally:
            if self._stats.lookups % STATS_LOG_INTERVAL == 0:
                self.log_stats()

    def _lookup(self, model_key: str, new_tokens: list[int]) -> CacheLookup:
        entry = self._entry
        now = self._clock()

        if entry is None:
            return self._miss(new_tokens, "empty")
        if entry.model_key != model_key:
            self._entry = None
            return self._miss(new_tokens, "model_key_changed")
        if not entry.is_fresh(now, self.freshness_seconds):
            self._entry = None
            return self._miss(new_tokens, "expired")
        if entry.handle.offset != len(entry.cached_tokens):
            logger.warning(
                "prompt_cache_out_of_sync",
                cached_tokens=len(entry.cached_tokens),
                handle_offset=entry.handle.offset,
            )
            self._entry = None
            return self._miss(new_tokens, "out_of_sync")

        entry.mark_accessed(now)

        common_len = common_prefix_length(entry.cached_tokens, new_tokens)
        effective_len = min(common_len, len(new_tokens) - 1)
        if effective_len <= 0:
            return self._miss(new_tokens, "no_common_prefix")

        cache_len = len(entry.cached_tokens)
        if effective_len == cache_len:
            self._stats.hits += 1
            logger.debug(
                "prompt_cache_hit",
                reused_tokens=effective_len,
                prompt_tokens=len(new_tokens),
                reuse_pct=round(effective_len / len(new_tokens) * 100, 1),
            )
            return CacheLookup(
                tokens_to_process=new_tokens[effective_len:],
                handle=entry.handle,
                reused_tokens=effective_len,
                cached_message_count=entry.last_message_count,
            )

        # effective_len < cache_len: the prompt diverges inside the cached tokens
        self._stats.partial_hits += 1
        if not entry.handle.is_trimmable:
            return self._miss(new_tokens, "not_trimmable")

        trim_amount = cache_len - effective_len
        trimmed = entry.handle.trim(trim_amount)
        if trimmed != trim_amount:
            logger.warning(
                "prompt_cache_trim_incomplete",
                requested=trim_amount,
                trimmed=trimmed,
            )
            self._entry = None
            return self._miss(new_tokens, "trim_failed")

        entry.cached_tokens = entry.cached_tokens[:effective_len]
        self._stats.trims += 1
        self._stats.hits += 1
        logger.debug(
            "prompt_cache_partial_hit",
            trimmed_from=cache_len,
            trimmed_to=effective_len,
            prompt_tokens=len(new_tokens),
            reuse_pct=round(effective_len / len(new_tokens) * 100, 1),
        )
        return CacheLookup(
            tokens_to_process=new_tokens[effective_len:],
            handle=entry.handle,
            reused_tokens=effective_len,
            cached_message_count=entry.last_message_count,
        )

    def _miss(self, new_tokens: list[int], reason: str) -> CacheLookup:
        self._stats.misses += 1
        logger.debug("prompt_cache_miss", reason=reason, prompt_tokens=len(new_tokens))
        return CacheLookup(tokens_to_process=new_tokens)

    def update(
        self,
        model_key: str,
        tokens: Sequence[int],
        handle: Any,
        message_count: int,
    ) -> None:
        """Replace the slot with the state left by a finished generation.

        Args:
            model_key: Key the handle was built under
            tokens: Every token the handle has been advanced over
            handle: Engine cache handle after generation
            message_count: Conversation length the prompt was built from
        """
        now = self._clock()
        self._entry = CacheEntry(
            model_key=model_key,
            cached_tokens=list(tokens),
            handle=handle,
            last_message_count=message_count,
            created_at=now,
            last_accessed_at=now,
        )
        self._stats.resets += 1

    def invalidate_if_conversation_shrank(self, message_count: int) -> bool:
        """Drop the entry if it was built from a longer conversation.

        A shorter conversation means history was cleared or rewound, so the
        cached context no longer matches the real prompt.

        Returns:
            True if the entry was dropped.
        """
        entry = self._entry
        if entry is None or message_count >= entry.last_message_count:
            return False

        logger.info(
            "prompt_cache_invalidated",
            reason="conversation_shrank",
            cached_messages=entry.last_message_count,
            current_messages=message_count,
        )
        self._entry = None
        self._stats.resets += 1
        return True

    def discard(self, reason: str) -> bool:
        """Drop the entry without touching its handle.

        Used when a generation that advanced the cached handle did not
        finish, so the handle no longer matches the cached tokens.

        Returns:
            True if there was an entry to drop.
        """
        if self._entry is None:
            return False

        logger.info(
            "prompt_cache_discarded",
            reason=reason,
            cached_tokens=len(self._entry.cached_tokens),
        )
        self._entry = None
        self._stats.resets += 1
        return True

    def clear(self) -> None:
        """Drop the entry and reset the counters."""
        self._entry = None
        self._stats = CacheStats()

    def log_stats(self) -> None:
        stats = self._stats
        logger.info(
            "prompt_cache_stats",
            hits=stats.hits,
            misses=stats.misses,
            partial_hits=stats.partial_hits,
            hit_rate=round(stats.hit_rate * 100, 2),
            resets=stats.resets,
            trims=stats.trims,
        )
