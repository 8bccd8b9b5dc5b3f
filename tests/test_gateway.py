import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from conftest import ScriptedCompletionClient, text, tool_fragment
from crmrelay.conversation.completions import CompletionClient, CompletionDelta
from crmrelay.conversation.engine import ConversationEngine
from crmrelay.conversation.follow_up import FollowUpSynthesizer
from crmrelay.conversation.tools import get_tool_definitions
from crmrelay.gateway import ChatGateway, FollowUpChannel
from crmrelay.models import FollowUpRequest, Role
from crmrelay.services.session_store import InMemorySessionStore
from crmrelay.services.stream_manager import StreamManager
from crmrelay.services.tool_dispatcher import ToolDispatcher

ACME_ARGS = '{"operation":"create","entityType":"Account","fields":{"name":"Acme"}}'


def make_gateway(
    turn_client: CompletionClient,
    follow_up_client: CompletionClient,
    backend: MagicMock,
    store: InMemorySessionStore,
    websocket: MagicMock,
    **kwargs: Any,
) -> ChatGateway:
    streams = StreamManager(chunk_size=10)
    streams.add_connection("s1", websocket)
    return ChatGateway(
        ConversationEngine(turn_client, store, get_tool_definitions()),
        ToolDispatcher(backend),
        FollowUpSynthesizer(follow_up_client, "Narrate."),
        streams,
        **kwargs,
    )


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore("system")


@pytest.mark.asyncio
async def test_create_account_end_to_end(
    mock_backend: MagicMock, fake_websocket: MagicMock, store: InMemorySessionStore
) -> None:
    """Text chunks, then tool_call before tool_result, then the narration and final."""
    turn = ScriptedCompletionClient(
        [
            text("Sure, creating it."),
            tool_fragment(index=0, id="call_1", name="create_entity", arguments=ACME_ARGS[:30]),
            tool_fragment(index=0, arguments=ACME_ARGS[30:]),
        ]
    )
    follow_up = ScriptedCompletionClient([text("Account Acme was created. "), text("Anything else?")])
    gateway = make_gateway(turn, follow_up, mock_backend, store, fake_websocket)

    response = await gateway.handle_message("s1", "Create an account named Acme")

    assert response is not None
    assert response.tool_calls[0].arguments == ACME_ARGS
    mock_backend.execute.assert_awaited_once_with("create", "Account", {"name": "Acme"})

    sent = fake_websocket.sent
    types = [c["type"] for c in sent]
    assert types == [
        "content",
        "content",
        "tool_call",
        "tool_result",
        "content",
        "content",
        "final",
    ]
    assert "".join(c["content"] for c in sent[:2]) == "Sure, creating it."
    assert sent[2] == {"type": "tool_call", "content": "Executing tool: create_entity", "toolCallId": "call_1"}
    assert sent[3]["toolCallId"] == "call_1"
    assert json.loads(sent[3]["content"]) == {
        "status": "success",
        "data": {"id": "001XX", "success": True},
    }
    assert [c["content"] for c in sent[4:6]] == ["Account Acme was created. ", "Anything else?"]

    narration_request = follow_up.requests[0]["messages"][1]
    assert narration_request["name"] == "create_entity"
    assert json.loads(narration_request["content"])["status"] == "success"


@pytest.mark.asyncio
async def test_tool_calls_run_in_model_order(
    mock_backend: MagicMock, fake_websocket: MagicMock, store: InMemorySessionStore
) -> None:
    turn = ScriptedCompletionClient(
        [
            tool_fragment(index=0, id="a", name="fetch_entity", arguments='{"operation":"fetch","entityType":"Account","identifier":"1"}'),
            tool_fragment(index=1, id="b", name="delete_everything", arguments="{}"),
        ]
    )
    gateway = make_gateway(
        turn, ScriptedCompletionClient(), mock_backend, store, fake_websocket, follow_ups_enabled=False
    )
    await gateway.handle_message("s1", "do things")

    events = [(c["type"], c.get("toolCallId")) for c in fake_websocket.sent]
    assert events == [
        ("tool_call", "a"),
        ("tool_result", "a"),
        ("tool_call", "b"),
        ("tool_result", "b"),
        ("final", None),
    ]
    assert json.loads(fake_websocket.sent[3]["content"]) == {
        "status": "error",
        "error": "Unknown tool: delete_everything",
    }
    assert mock_backend.execute.await_count == 1


@pytest.mark.asyncio
async def test_narration_is_delivered_before_the_next_tool_call(
    mock_backend: MagicMock, fake_websocket: MagicMock, store: InMemorySessionStore
) -> None:
    """With several tool calls, each call's narration precedes the next call and is tagged with its id."""

    async def _slow_fetch(*args: Any) -> Dict[str, Any]:
        await asyncio.sleep(0.01)
        return {"id": args[2]}

    mock_backend.execute.side_effect = _slow_fetch
    turn = ScriptedCompletionClient(
        [
            tool_fragment(index=0, id="a", name="fetch_entity", arguments='{"operation":"fetch","entityType":"Account","identifier":"1"}'),
            tool_fragment(index=1, id="b", name="fetch_entity", arguments='{"operation":"fetch","entityType":"Account","identifier":"2"}'),
        ]
    )
    follow_up = ScriptedCompletionClient([text("Narrating A. ")], [text("Narrating B. ")])
    gateway = make_gateway(turn, follow_up, mock_backend, store, fake_websocket)
    await gateway.handle_message("s1", "fetch both")

    events = [(c["type"], c.get("toolCallId"), c["content"]) for c in fake_websocket.sent]
    assert [(kind, call_id) for kind, call_id, _ in events] == [
        ("tool_call", "a"),
        ("tool_result", "a"),
        ("content", "a"),
        ("tool_call", "b"),
        ("tool_result", "b"),
        ("content", "b"),
        ("final", None),
    ]
    assert events[2][2] == "Narrating A. "
    assert events[5][2] == "Narrating B. "


@pytest.mark.asyncio
async def test_stream_error_becomes_single_error_chunk(
    mock_backend: MagicMock, fake_websocket: MagicMock, store: InMemorySessionStore
) -> None:
    turn = ScriptedCompletionClient([text("Hello"), ConnectionError("stream reset")])
    gateway = make_gateway(turn, ScriptedCompletionClient(), mock_backend, store, fake_websocket)

    assert await gateway.handle_message("s1", "hi") is None
    assert fake_websocket.sent == [{"type": "error", "content": "stream reset"}]
    history = await store.get_or_create("s1")
    assert [m.role for m in history] == [Role.SYSTEM, Role.USER]


@pytest.mark.asyncio
async def test_follow_up_failure_does_not_end_the_turn(
    mock_backend: MagicMock, fake_websocket: MagicMock, store: InMemorySessionStore
) -> None:
    turn = ScriptedCompletionClient([tool_fragment(id="c1", name="create_entity", arguments=ACME_ARGS)])
    follow_up = ScriptedCompletionClient([RuntimeError("narration failed")])
    gateway = make_gateway(turn, follow_up, mock_backend, store, fake_websocket)
    await gateway.handle_message("s1", "create Acme")

    types = [c["type"] for c in fake_websocket.sent]
    assert types == ["tool_call", "tool_result", "error", "final"]
    assert fake_websocket.sent[2]["toolCallId"] == "c1"


class GatedClient(CompletionClient):
    """Streams one reply per call, pausing until released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.active = 0
        self.max_active = 0

    async def stream_completion(
        self,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[CompletionDelta]:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await self.release.wait()
        self.active -= 1
        yield CompletionDelta(content=f"reply to {messages[-1]['content']}")


@pytest.mark.asyncio
async def test_turns_of_one_session_are_serialized(
    mock_backend: MagicMock, fake_websocket: MagicMock, store: InMemorySessionStore
) -> None:
    """Overlapping turns for one session never interleave their history appends."""
    client = GatedClient()
    gateway = make_gateway(client, ScriptedCompletionClient(), mock_backend, store, fake_websocket)

    first = asyncio.create_task(gateway.handle_message("s1", "one"))
    second = asyncio.create_task(gateway.handle_message("s1", "two"))
    await asyncio.sleep(0.01)
    assert client.active == 1
    assert gateway.is_busy("s1")
    client.release.set()
    await asyncio.gather(first, second)

    assert client.max_active == 1
    history = await store.get_or_create("s1")
    assert [m.content for m in history[1:]] == ["one", "reply to one", "two", "reply to two"]
    assert not gateway.is_busy("s1")


@pytest.mark.asyncio
async def test_different_sessions_progress_concurrently(
    mock_backend: MagicMock, fake_websocket: MagicMock, store: InMemorySessionStore
) -> None:
    client = GatedClient()
    gateway = make_gateway(client, ScriptedCompletionClient(), mock_backend, store, fake_websocket)

    tasks = [asyncio.create_task(gateway.handle_message(sid, "hi")) for sid in ("s1", "s2")]
    await asyncio.sleep(0.01)
    assert client.active == 2
    client.release.set()
    await asyncio.gather(*tasks)


@pytest.mark.asyncio
async def test_chunks_for_disconnected_session_are_dropped(
    mock_backend: MagicMock, fake_websocket: MagicMock, store: InMemorySessionStore
) -> None:
    turn = ScriptedCompletionClient([text("nobody is listening")])
    gateway = make_gateway(turn, ScriptedCompletionClient(), mock_backend, store, fake_websocket)
    response = await gateway.handle_message("ghost", "hi")
    assert response is not None
    assert fake_websocket.sent == []


@pytest.mark.asyncio
async def test_follow_up_channel_delivers_in_order_until_closed() -> None:
    channel = FollowUpChannel()
    requests = [FollowUpRequest(tool_name=f"t{i}", tool_result={}, session_id="s1") for i in range(3)]
    for request in requests:
        channel.publish(request)
    channel.close()
    received = [r async for r in channel]
    assert received == requests
    with pytest.raises(RuntimeError):
        channel.publish(requests[0])
