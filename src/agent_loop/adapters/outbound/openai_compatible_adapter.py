"""OpenAI-compatible implementation of ModelBackendPort.

Streams chat completions from an OpenAI-style ``/chat/completions``
endpoint, primarily ``mlx_lm.server``. Each server-sent event becomes one
StreamDelta: content text, structured tool-call fragments keyed by index,
and the finish reason.

Start a server with:
    mlx_lm.server --model mlx-community/Qwen3-4B-Instruct-4bit --port 8080
"""

import json
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx
import structlog

from agent_loop.domain.entities import Message
from agent_loop.domain.errors import ModelBackendError
from agent_loop.domain.value_objects import StreamDelta, ToolCallFragment, ToolSpec

logger = structlog.get_logger(__name__)

MLX_SERVER_API_KEY = "mlx-server"
DEFAULT_TIMEOUT_SECONDS = 300.0

_SSE_DATA_PREFIX = "data:"
_SSE_DONE = "[DONE]"


def delta_from_chunk(chunk: dict[str, Any]) -> StreamDelta | None:
    """Convert one decoded ``chat.completion.chunk`` into a StreamDelta.

    Returns None for chunks without choices (usage-only chunks).
    """
    choices = chunk.get("choices") or []
    if not choices:
        return None

    choice = choices[0]
    delta = choice.get("delta") or {}

    fragments = []
    for call in delta.get("tool_calls") or []:
        function = call.get("function") or {}
        fragments.append(
            ToolCallFragment(
                index=int(call.get("index", 0)),
                id=call.get("id") or "",
                name=function.get("name") or "",
                arguments=function.get("arguments") or "",
            )
        )

    return StreamDelta(
        text=delta.get("content"),
        tool_calls=tuple(fragments),
        finish_reason=choice.get("finish_reason"),
    )


class OpenAICompatibleBackend:
    """Streaming chat-completions backend over httpx.

    Args:
        base_url: API root, e.g. ``http://localhost:8080/v1``
        model: Model identifier sent with every request
        api_key: Bearer token (mlx_lm.server ignores it)
        timeout: Request timeout in seconds
        client: Preconfigured httpx client (owned by the caller)

    Example:
        backend = OpenAICompatibleBackend.mlx_server("mlx-community/Qwen3-4B-Instruct-4bit")
        async for delta in backend.complete(messages, tools, temperature=0.7):
            ...
        await backend.aclose()
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = MLX_SERVER_API_KEY,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def mlx_server(
        cls,
        model: str,
        host: str = "localhost",
        port: int = 8080,
    ) -> "OpenAICompatibleBackend":
        """Backend for a local ``mlx_lm.server``."""
        return cls(f"http://{host}:{port}/v1", model)

    def build_request_body(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec],
        temperature: float,
        max_tokens: int | None = None,
        top_p: float | None = None,
        repetition_penalty: float | None = None,
        repetition_context_size: int | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_openai_format() for message in messages],
            "temperature": temperature,
            "stream": True,
        }
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if top_p is not None:
            body["top_p"] = top_p
        if repetition_penalty is not None:
            body["repetition_penalty"] = repetition_penalty
        if repetition_context_size is not None:
            body["repetition_context_size"] = repetition_context_size
        if tools:
            body["tools"] = [tool.to_chat_tool() for tool in tools]
            body["tool_choice"] = "auto"
        return body

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
        body = self.build_request_body(
            messages,
            tools,
            temperature,
            max_tokens=max_tokens,
            top_p=top_p,
            repetition_penalty=repetition_penalty,
            repetition_context_size=repetition_context_size,
        )
        return self._stream(body)

    async def _stream(self, body: dict[str, Any]) -> AsyncIterator[StreamDelta]:
        url = f"{self.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "text/event-stream",
        }
        logger.debug("chat_completion_request", url=url, messages=len(body["messages"]))

        try:
            async with self._client.stream("POST", url, json=body, headers=headers) as response:
                if response.status_code == 401:
                    raise ModelBackendError("Authentication failed (HTTP 401)")
                if response.status_code == 429:
                    raise ModelBackendError("Rate limit exceeded (HTTP 429)")
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise ModelBackendError(
                        f"Server error (HTTP {response.status_code}): {detail[:200]}"
                    )

                async for line in response.aiter_lines():
                    if not line.startswith(_SSE_DATA_PREFIX):
                        continue
                    data = line[len(_SSE_DATA_PREFIX):].strip()
                    if data == _SSE_DONE:
                        return
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("chat_completion_chunk_undecodable", data=data[:100])
                        continue
                    delta = delta_from_chunk(chunk)
                    if delta is not None:
                        yield delta
        except httpx.HTTPError as exc:
            logger.error("chat_completion_failed", url=url, error=str(exc))
            raise ModelBackendError(f"Network error: {exc}") from exc

    async def aclose(self) -> None:
        """Close the HTTP client if this backend created it."""
        if self._owns_client:
            await self._client.aclose()
