import sys
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.websockets import WebSocketState

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from crmrelay.conversation.completions import (  # noqa: E402
    CompletionClient,
    CompletionDelta,
    ToolCallFragment,
)
from crmrelay.services.nango import ActionBackend  # noqa: E402


class ScriptedCompletionClient(CompletionClient):
    """Completion double: each call replays the next scripted list of deltas.

    A script entry that is an Exception is raised at that point of the stream.
    """

    def __init__(self, *scripts: List[Any]) -> None:
        self.scripts = list(scripts)
        self.requests: List[Dict[str, Any]] = []

    async def stream_completion(
        self,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[CompletionDelta]:
        self.requests.append({"messages": messages, "tools": tools, "max_tokens": max_tokens})
        script = self.scripts.pop(0) if self.scripts else []
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item


def text(content: str) -> CompletionDelta:
    return CompletionDelta(content=content)


def tool_fragment(
    index: Optional[int] = None,
    id: Optional[str] = None,
    name: Optional[str] = None,
    arguments: Optional[str] = None,
) -> CompletionDelta:
    return CompletionDelta(
        tool_calls=[ToolCallFragment(index=index, id=id, name=name, arguments=arguments)]
    )


@pytest.fixture
def mock_backend() -> MagicMock:
    """Action backend with an async execute returning a canned record."""
    m = MagicMock(spec=ActionBackend)
    m.execute = AsyncMock(return_value={"id": "001XX", "success": True})
    m.close = AsyncMock(return_value=None)
    return m


@pytest.fixture
def fake_websocket() -> MagicMock:
    """Connected websocket whose send_json records outbound chunks."""
    ws = MagicMock()
    ws.client_state = WebSocketState.CONNECTED
    ws.sent = []

    async def _send_json(data: Dict[str, Any]) -> None:
        ws.sent.append(data)

    ws.send_json = AsyncMock(side_effect=_send_json)
    return ws
