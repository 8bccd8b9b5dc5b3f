import asyncio
import json
import logging
from typing import AsyncIterator, Dict, Optional

from .conversation.engine import ConversationEngine
from .conversation.follow_up import FollowUpSynthesizer
from .errors import GatewayError
from .models import (
    ChunkType,
    ConversationResponse,
    FollowUpRequest,
    StreamChunk,
    ToolCall,
    ToolInvocation,
)
from .services.stream_manager import StreamManager
from .services.tool_dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)


class FollowUpChannel:
    """Typed queue carrying tool results from execution to follow-up synthesis."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._closed = False

    def publish(self, request: FollowUpRequest) -> None:
        if self._closed:
            raise RuntimeError("FollowUpChannel is closed")
        self._queue.put_nowait(request)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    async def join(self) -> None:
        """Wait until every published request has been fully consumed."""
        await self._queue.join()

    async def __aiter__(self) -> AsyncIterator[FollowUpRequest]:
        while True:
            item = await self._queue.get()
            try:
                if item is self._CLOSED:
                    return
                yield item  # type: ignore[misc]
            finally:
                # Runs once the consumer asks for the next item.
                self._queue.task_done()


class ChatGateway:
    """Feeds inbound turns to the engine and pushes everything a turn produces to its session.

    At most one turn runs per session id at a time; turns of different
    sessions progress independently.
    """

    def __init__(
        self,
        engine: ConversationEngine,
        dispatcher: ToolDispatcher,
        synthesizer: FollowUpSynthesizer,
        streams: StreamManager,
        *,
        follow_ups_enabled: bool = True,
    ) -> None:
        self.engine = engine
        self.dispatcher = dispatcher
        self.synthesizer = synthesizer
        self.streams = streams
        self.follow_ups_enabled = follow_ups_enabled
        self._turn_locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, int] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._turn_locks.get(session_id)
        if lock is None:
            lock = self._turn_locks[session_id] = asyncio.Lock()
        return lock

    def is_busy(self, session_id: str) -> bool:
        lock = self._turn_locks.get(session_id)
        return lock is not None and lock.locked()

    async def _send(self, session_id: str, chunk: StreamChunk) -> None:
        await self.streams.send_chunk(session_id, chunk)

    async def handle_message(self, session_id: str, text: str) -> Optional[ConversationResponse]:
        """Run one turn for ``session_id``, waiting for any turn already in flight."""
        lock = self._lock_for(session_id)
        self._pending[session_id] = self._pending.get(session_id, 0) + 1
        try:
            async with lock:
                return await self._run_turn(session_id, text)
        finally:
            self._pending[session_id] -= 1
            if not self._pending[session_id]:
                del self._pending[session_id]
                del self._turn_locks[session_id]

    async def _run_turn(self, session_id: str, text: str) -> Optional[ConversationResponse]:
        logger.info("Message received session_id=%s chars=%d", session_id, len(text))
        try:
            response = await self.engine.process_message(session_id, text)
        except GatewayError as e:
            logger.error("Error processing message session_id=%s: %s", session_id, e)
            await self._send(session_id, StreamChunk(type=ChunkType.ERROR, content=str(e)))
            return None

        logger.info(
            "Response generated session_id=%s tool_calls=%d",
            session_id,
            len(response.tool_calls),
        )
        for chunk in self.streams.create_stream(response.content):
            await self._send(session_id, chunk)

        if response.tool_calls:
            await self._run_tool_calls(session_id, response.tool_calls)

        await self._send(session_id, StreamChunk(type=ChunkType.FINAL, content=""))
        return response

    async def _run_tool_calls(self, session_id: str, tool_calls: list[ToolCall]) -> None:
        channel = FollowUpChannel()
        consumer = asyncio.create_task(self._drain_follow_ups(channel))
        try:
            # Model order is preserved: each call and its narration finish before the next starts.
            for position, call in enumerate(tool_calls):
                if position:
                    await self._wait_for_follow_ups(channel, consumer)
                logger.info("Tool call started session_id=%s tool=%s id=%s", session_id, call.name, call.id)
                await self._send(
                    session_id,
                    StreamChunk(
                        type=ChunkType.TOOL_CALL,
                        content=f"Executing tool: {call.name}",
                        tool_call_id=call.id,
                    ),
                )
                result = await self.dispatcher.execute_tool(
                    ToolInvocation(
                        name=call.name,
                        arguments=call.arguments,
                        session_id=session_id,
                        call_id=call.id,
                    )
                )
                logger.info("Tool result session_id=%s id=%s status=%s", session_id, call.id, result.status)
                await self._send(
                    session_id,
                    StreamChunk(
                        type=ChunkType.TOOL_RESULT,
                        content=json.dumps(result.to_dict(), default=str),
                        tool_call_id=call.id,
                    ),
                )
                if self.follow_ups_enabled:
                    channel.publish(
                        FollowUpRequest(
                            tool_name=call.name,
                            tool_result=result.to_dict(),
                            session_id=session_id,
                            tool_call_id=call.id,
                        )
                    )
        finally:
            channel.close()
            await consumer

    @staticmethod
    async def _wait_for_follow_ups(channel: FollowUpChannel, consumer: "asyncio.Task[None]") -> None:
        """Block until published follow-ups are delivered, or the consumer has stopped."""
        joined = asyncio.ensure_future(channel.join())
        try:
            await asyncio.wait({joined, consumer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            joined.cancel()

    async def _drain_follow_ups(self, channel: FollowUpChannel) -> None:
        async for request in channel:
            async for chunk in self.synthesizer.synthesize(
                request.tool_name,
                request.tool_result,
                request.session_id,
                tool_call_id=request.tool_call_id,
            ):
                await self._send(request.session_id, chunk)
