import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, TypeVar

from openai import AsyncOpenAI

from ..errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ToolCallFragment:
    """A partial tool call as it appears in one streamed delta."""

    index: Optional[int] = None
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclass
class CompletionDelta:
    content: Optional[str] = None
    tool_calls: List[ToolCallFragment] = field(default_factory=list)


class CompletionClient(ABC):
    """The one thing the relay needs from a language-model provider."""

    @abstractmethod
    def stream_completion(
        self,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[CompletionDelta]:
        """Submit a streaming completion and yield its deltas in order."""

    async def close(self) -> None:
        return None


class OpenAICompletionClient(CompletionClient):
    """CompletionClient over any OpenAI-compatible chat completions endpoint."""

    def __init__(self, client: AsyncOpenAI, model: str, max_tokens: int) -> None:
        self._client = client
        self.model = model
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: Any) -> "OpenAICompletionClient":
        client = AsyncOpenAI(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
        )
        return cls(client, model=settings.model, max_tokens=settings.max_tokens)

    async def close(self) -> None:
        await self._client.close()

    async def stream_completion(
        self,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[CompletionDelta]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        stream = await self._client.chat.completions.create(**kwargs)
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            fragments = [
                ToolCallFragment(
                    index=tc.index,
                    id=tc.id,
                    name=tc.function.name if tc.function else None,
                    arguments=tc.function.arguments if tc.function else None,
                )
                for tc in delta.tool_calls or []
            ]
            if delta.content or fragments:
                yield CompletionDelta(content=delta.content, tool_calls=fragments)


async def iterate_with_deadline(
    stream: AsyncIterator[T], timeout: Optional[float], operation: str
) -> AsyncIterator[T]:
    """Re-yield ``stream`` while enforcing one overall deadline.

    Raises:
        OperationTimeoutError: When the deadline passes before the stream ends.
    """
    if not timeout:
        async for item in stream:
            yield item
        return

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    iterator = stream.__aiter__()
    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise OperationTimeoutError(operation, timeout)
            try:
                item = await asyncio.wait_for(iterator.__anext__(), remaining)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as e:
                raise OperationTimeoutError(operation, timeout) from e
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except RuntimeError:
                logger.debug("Stream for %s could not be closed cleanly", operation)
