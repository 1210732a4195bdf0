"""MLX implementation of CachingModelBackendPort.

Runs local models on Apple Silicon through mlx-lm. The agent decides which
prompt prefix is already covered by a cache handle; this adapter only
advances the handle over the remaining tokens and streams the generation.

Threading: mlx-lm generation is synchronous. Every engine call runs on a
single-worker executor, so the model and its KV caches are only touched
from one thread while the event loop stays responsive.
"""

import asyncio
from collections.abc import AsyncIterator, Iterator
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import structlog
from mlx_lm import load, stream_generate
from mlx_lm.models.cache import can_trim_prompt_cache, make_prompt_cache, trim_prompt_cache
from mlx_lm.sample_utils import make_logits_processors, make_sampler

from agent_loop.domain.value_objects import DEFAULT_TOP_P, GenerationChunk, GenerationParameters

logger = structlog.get_logger(__name__)

DEFAULT_MAX_TOKENS = 2048
DEFAULT_KV_GROUP_SIZE = 64

_EXHAUSTED = object()


class MLXCacheHandle:
    """Wraps an mlx-lm prompt cache (one KV cache per layer)."""

    def __init__(self, layers: list[Any]) -> None:
        self.layers = layers

    @property
    def is_trimmable(self) -> bool:
        return bool(can_trim_prompt_cache(self.layers))

    @property
    def offset(self) -> int:
        """Token positions held by the cache (first layer is representative)."""
        if not self.layers:
            return 0
        return int(self.layers[0].offset)

    def trim(self, n: int) -> int:
        if n <= 0:
            return 0
        return int(trim_prompt_cache(self.layers, n))


class MLXGenerationBackend:
    """Cache-capable backend over an mlx-lm model and tokenizer.

    Args:
        model: Model returned by mlx_lm.load()
        tokenizer: Tokenizer wrapper returned by mlx_lm.load()
        model_id: HuggingFace model ID or local path
        kv_bits: KV cache quantization bits (None keeps full precision)
        kv_group_size: Quantization group size
    """

    def __init__(
        self,
        model: Any,
        tokenizer: Any,
        model_id: str,
        kv_bits: int | None = 8,
        kv_group_size: int = DEFAULT_KV_GROUP_SIZE,
    ) -> None:
        self._model = model
        self._tokenizer = tokenizer
        self._model_id = model_id
        self.kv_bits = kv_bits
        self.kv_group_size = kv_group_size
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mlx-generate")

    @classmethod
    def load(cls, model_id: str, kv_bits: int | None = 8) -> "MLXGenerationBackend":
        """Load a model from the HuggingFace hub or a local path.

        Raises:
            Exception: If the model cannot be downloaded or loaded
        """
        logger.info("mlx_model_loading", model_id=model_id)
        model, tokenizer = load(model_id)
        logger.info("mlx_model_loaded", model_id=model_id, kv_bits=kv_bits)
        return cls(model, tokenizer, model_id, kv_bits=kv_bits)

    @property
    def model_id(self) -> str:
        return self._model_id

    def tokenize(self, text: str) -> list[int]:
        return list(self._tokenizer.encode(text))

    async def process_and_cache(
        self,
        tokens: list[int],
        handle: Any | None,
        parameters: GenerationParameters,
    ) -> tuple[AsyncIterator[GenerationChunk], MLXCacheHandle]:
        """Advance the cache over ``tokens`` and stream the generation.

        Args:
            tokens: Prompt tokens not yet in the cache (at least one)
            handle: MLXCacheHandle from a previous generation, or None
            parameters: Sampling parameters

        Returns:
            Tuple of (chunk stream, handle). The handle is the one passed in
            (or a new one) and is advanced as the stream is consumed.
        """
        if not tokens:
            raise ValueError("process_and_cache needs at least one token to process")

        if handle is None:
            handle = MLXCacheHandle(make_prompt_cache(self._model))

        sampler = make_sampler(
            temp=parameters.temperature,
            top_p=parameters.top_p if parameters.top_p is not None else DEFAULT_TOP_P,
        )
        logits_processors = make_logits_processors(
            repetition_penalty=parameters.repetition_penalty,
            repetition_context_size=parameters.repetition_context_size or 20,
        )

        kwargs: dict[str, Any] = {}
        if self.kv_bits is not None:
            kwargs["kv_bits"] = self.kv_bits
            kwargs["kv_group_size"] = self.kv_group_size

        iterator = stream_generate(
            self._model,
            self._tokenizer,
            tokens,
            max_tokens=parameters.max_tokens or DEFAULT_MAX_TOKENS,
            sampler=sampler,
            logits_processors=logits_processors,
            prompt_cache=handle.layers,
            **kwargs,
        )

        logger.debug(
            "mlx_generation_started",
            tokens_to_process=len(tokens),
            cache_offset=handle.offset,
        )
        return self._stream(iterator), handle

    async def _stream(self, iterator: Iterator[Any]) -> AsyncIterator[GenerationChunk]:
        loop = asyncio.get_running_loop()
        while True:
            response = await loop.run_in_executor(self._executor, next, iterator, _EXHAUSTED)
            if response is _EXHAUSTED:
                break

            if response.finish_reason is None:
                yield GenerationChunk(text=response.text, token=response.token)
                continue

            # A stop token is never yielded before the final response. A
            # "length" response may repeat the previous token depending on the
            # mlx-lm version, so it is not recorded; the cache handle is
            # trimmed back to the recorded tokens afterwards.
            token = response.token if response.finish_reason == "stop" else None
            logger.debug(
                "mlx_generation_finished",
                finish_reason=response.finish_reason,
                generation_tokens=response.generation_tokens,
                generation_tps=round(response.generation_tps, 1),
            )
            yield GenerationChunk(text=response.text, token=token)

    def close(self) -> None:
        """Release the generation thread."""
        self._executor.shutdown(wait=False)

    async def aclose(self) -> None:
        self.close()
