import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChunkType(str, Enum):
    CONTENT = "content"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    FINAL = "final"


class MessageType(str, Enum):
    USER = "USER"
    ASSISTANT = "ASSISTANT"
    SYSTEM = "SYSTEM"
    STREAM = "STREAM"


@dataclass
class Message:
    """One entry of a session's conversation history."""

    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": Role(self.role).value, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(role=Role(data["role"]), content=str(data.get("content") or ""))


@dataclass
class ToolCall:
    """A model-issued tool call, assembled from streamed fragments."""

    id: str
    name: str = ""
    arguments: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ToolInvocation:
    """Input of ToolDispatcher.execute_tool.

    ``arguments`` may still be the raw JSON text produced by the model.
    """

    name: str
    arguments: str | Dict[str, Any]
    session_id: str
    call_id: str


@dataclass
class ToolResult:
    status: str
    data: Any = None
    error: Optional[str] = None
    tool_call_id: Optional[str] = None

    @classmethod
    def success(cls, data: Any, tool_call_id: Optional[str] = None) -> "ToolResult":
        return cls(status="success", data=data, tool_call_id=tool_call_id)

    @classmethod
    def failure(cls, error: str, tool_call_id: Optional[str] = None) -> "ToolResult":
        return cls(status="error", error=error, tool_call_id=tool_call_id)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"status": "success", "data": self.data}
        return {"status": "error", "error": self.error}


@dataclass
class StreamChunk:
    """A unit of outbound content delivered to a session channel."""

    type: ChunkType
    content: str
    tool_call_id: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        payload = {"type": ChunkType(self.type).value, "content": self.content}
        if self.tool_call_id is not None:
            payload["toolCallId"] = self.tool_call_id
        return payload


@dataclass
class ConversationResponse:
    content: str
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass
class FollowUpRequest:
    """Item type of the channel between tool execution and follow-up synthesis."""

    tool_name: str
    tool_result: Dict[str, Any]
    session_id: str
    tool_call_id: Optional[str] = None


@dataclass
class ClientMessage:
    """Inbound session message envelope."""

    message_id: str
    content: str
    session_id: str
    type: MessageType = MessageType.USER

    @classmethod
    def from_payload(cls, raw: str | Dict[str, Any], default_session_id: str) -> "ClientMessage":
        """Parse and validate an envelope received from a session channel.

        Args:
            raw: JSON text or an already decoded dict.
            default_session_id: Used when the envelope carries no sessionId.

        Raises:
            ValueError: If the payload is not a JSON object or has no content.
        """
        payload = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(payload, dict):
            raise ValueError("Message envelope must be a JSON object")

        content = payload.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Message envelope has no content")

        try:
            message_type = MessageType(str(payload.get("type") or MessageType.USER.value).upper())
        except ValueError as e:
            raise ValueError(f"Unsupported message type: {payload.get('type')}") from e

        return cls(
            message_id=str(payload.get("messageId") or ""),
            content=content,
            session_id=str(payload.get("sessionId") or default_session_id),
            type=message_type,
        )
