import json
import logging
import re
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional

from ..models import ChunkType, StreamChunk
from .completions import CompletionClient, iterate_with_deadline

logger = logging.getLogger(__name__)

SENTENCE_BOUNDARY = re.compile(r"[.!?]\s+")


def split_at_sentence_boundary(buffer: str) -> tuple[str, str]:
    """Split ``buffer`` right after its last sentence end (punctuation plus whitespace).

    Returns ("", buffer) when the buffer holds no complete sentence.
    """
    end = None
    for match in SENTENCE_BOUNDARY.finditer(buffer):
        end = match.end()
    if end is None:
        return "", buffer
    return buffer[:end], buffer[end:]


class FollowUpSynthesizer:
    """Narrates a tool result through a second, history-independent completion.

    Text is buffered and flushed at sentence boundaries, or whole once the
    buffer grows past ``flush_threshold`` characters.
    """

    def __init__(
        self,
        completions: CompletionClient,
        system_prompt: str,
        *,
        flush_threshold: int = 50,
        max_tokens: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._completions = completions
        self._system_prompt = system_prompt
        self._flush_threshold = flush_threshold
        self._max_tokens = max_tokens
        self._timeout = timeout_seconds

    def build_messages(self, tool_name: str, tool_result: Any) -> List[Dict[str, Any]]:
        return [
            {"role": "system", "content": self._system_prompt},
            {"role": "function", "name": tool_name, "content": json.dumps(tool_result, default=str)},
        ]

    async def synthesize(
        self,
        tool_name: str,
        tool_result: Any,
        session_id: str,
        tool_call_id: Optional[str] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield content chunks narrating ``tool_result``, or a single error chunk on failure.

        Content chunks carry ``tool_call_id`` so clients can attribute the narration.
        """
        follow_up_id = str(uuid.uuid4())
        logger.info(
            "Generating follow-up response follow_up_id=%s session_id=%s tool=%s",
            follow_up_id,
            session_id,
            tool_name,
        )
        buffer = ""
        try:
            stream = self._completions.stream_completion(
                self.build_messages(tool_name, tool_result), max_tokens=self._max_tokens
            )
            async for delta in iterate_with_deadline(stream, self._timeout, "Follow-up"):
                if not delta.content:
                    continue
                buffer += delta.content
                ready, buffer = split_at_sentence_boundary(buffer)
                if ready:
                    yield StreamChunk(type=ChunkType.CONTENT, content=ready, tool_call_id=tool_call_id)
                if len(buffer) > self._flush_threshold:
                    yield StreamChunk(type=ChunkType.CONTENT, content=buffer, tool_call_id=tool_call_id)
                    buffer = ""
            if buffer:
                yield StreamChunk(type=ChunkType.CONTENT, content=buffer, tool_call_id=tool_call_id)
        except Exception as e:
            logger.error(
                "Follow-up response generation failed follow_up_id=%s session_id=%s: %s",
                follow_up_id,
                session_id,
                e,
            )
            yield StreamChunk(
                type=ChunkType.ERROR,
                content=json.dumps(
                    {
                        "message": "Error generating follow-up response",
                        "error": str(e) or type(e).__name__,
                        "followUpId": follow_up_id,
                    }
                ),
                tool_call_id=tool_call_id or follow_up_id,
            )
            return

        logger.info(
            "Follow-up response generated successfully follow_up_id=%s session_id=%s",
            follow_up_id,
            session_id,
        )
