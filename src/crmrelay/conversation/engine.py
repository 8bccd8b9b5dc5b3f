import logging
import uuid
from typing import Any, Dict, List, Optional

from ..errors import GatewayError, StreamError
from ..models import ConversationResponse, Message, Role, ToolCall
from ..services.session_store import SessionStore
from .completions import CompletionClient, ToolCallFragment, iterate_with_deadline

logger = logging.getLogger(__name__)


class ToolCallAccumulator:
    """Merges streamed tool-call fragments into complete ToolCalls.

    Fragments are matched to a call by id; fragments without an id are matched
    by the provider's index, and fragments with neither continue the most
    recent call. Argument text is always concatenated.
    """

    def __init__(self) -> None:
        self._calls: Dict[str, ToolCall] = {}
        self._ids_by_index: Dict[int, str] = {}
        self._last_id: Optional[str] = None

    def _resolve_id(self, fragment: ToolCallFragment) -> str:
        if fragment.id:
            call_id = fragment.id
        elif fragment.index is not None and fragment.index in self._ids_by_index:
            call_id = self._ids_by_index[fragment.index]
        elif fragment.index is None and self._last_id is not None:
            call_id = self._last_id
        else:
            call_id = f"call_{uuid.uuid4().hex}"
        if fragment.index is not None:
            self._ids_by_index[fragment.index] = call_id
        return call_id

    def add(self, fragment: ToolCallFragment) -> ToolCall:
        call_id = self._resolve_id(fragment)
        call = self._calls.get(call_id)
        if call is None:
            call = ToolCall(id=call_id)
            self._calls[call_id] = call
        # Some providers repeat the full name on every fragment.
        if fragment.name and fragment.name != call.name:
            call.name += fragment.name
        if fragment.arguments:
            call.arguments += fragment.arguments
        self._last_id = call_id
        return call

    def calls(self) -> List[ToolCall]:
        complete = []
        for call in self._calls.values():
            if not call.name:
                logger.warning("Dropping tool call %s without a function name", call.id)
                continue
            complete.append(call)
        return complete


class ConversationEngine:
    """Runs one user turn: history, streaming completion, text and tool-call assembly."""

    def __init__(
        self,
        completions: CompletionClient,
        sessions: SessionStore,
        tools: List[Dict[str, Any]],
        *,
        max_tokens: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._completions = completions
        self._sessions = sessions
        self._tools = tools
        self._max_tokens = max_tokens
        self._timeout = timeout_seconds

    @property
    def tools(self) -> List[Dict[str, Any]]:
        return list(self._tools)

    async def process_message(self, session_id: str, user_text: str) -> ConversationResponse:
        """Process one user message for a session.

        The user message is recorded before the completion starts and stays in
        the history even if the completion fails. The assistant reply (text
        only, tool-call intent is not persisted) is appended only when the
        stream completes.

        Raises:
            StreamError: The provider call failed or the stream broke mid-way.
            OperationTimeoutError: The completion exceeded its deadline.
            SessionStoreError: The history could not be read or written.
        """
        await self._sessions.append(session_id, Message(role=Role.USER, content=user_text))
        history = await self._sessions.get_or_create(session_id)

        full_text = ""
        accumulator = ToolCallAccumulator()
        try:
            stream = self._completions.stream_completion(
                [m.to_dict() for m in history],
                tools=self._tools,
                max_tokens=self._max_tokens,
            )
            async for delta in iterate_with_deadline(stream, self._timeout, "Completion"):
                if delta.content:
                    full_text += delta.content
                for fragment in delta.tool_calls:
                    accumulator.add(fragment)
        except GatewayError as e:
            logger.error("Error processing stream session_id=%s: %s", session_id, e)
            raise
        except Exception as e:
            logger.exception("Error processing stream session_id=%s", session_id)
            raise StreamError(str(e) or type(e).__name__) from e

        await self._sessions.append(session_id, Message(role=Role.ASSISTANT, content=full_text))
        tool_calls = accumulator.calls()
        logger.info(
            "Turn completed session_id=%s chars=%d tool_calls=%d",
            session_id,
            len(full_text),
            len(tool_calls),
        )
        return ConversationResponse(content=full_text, tool_calls=tool_calls)
