from enum import Enum
from pydantic import BaseModel, field_serializer

from fanout.events import ToolCallRequest


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Message(BaseModel):
    role: MessageRole
    content: str

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value


class ToolCallRequestMessage(Message):
    """Assistant message that requested one or more tool calls."""

    tool_calls: list[ToolCallRequest]

    @field_serializer("tool_calls")
    def serialize_tool_calls(self, tool_calls: list[ToolCallRequest]) -> list[dict]:
        return [
            {
                "id": t.id,
                "type": "function",
                "function": {
                    "arguments": t.arguments_json,
                    "name": t.name
                }
            }
            for t in tool_calls
        ]


class ToolCallResultMessage(Message):
    tool_call_id: str


def system_message(content: str) -> Message:
    return Message(role=MessageRole.SYSTEM, content=content)


def user_message(content: str) -> Message:
    return Message(role=MessageRole.USER, content=content)
