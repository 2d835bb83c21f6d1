"""
Conversation state and archive entry models.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
    messages_from_dict,
    messages_to_dict,
)

from .token_budget import TokenCounter, count_message_tokens, estimate_tokens, message_text

# LangChain message type -> conversation role
ROLE_BY_TYPE = {
    "human": "user",
    "ai": "assistant",
    "system": "system",
    "tool": "tool",
}


def role_of(msg: BaseMessage) -> str:
    return ROLE_BY_TYPE.get(msg.type, msg.type)


@dataclass
class ConversationState:
    """Running summary plus the uncompressed tail of one conversation."""

    summary: str = ""
    recent_messages: list[BaseMessage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "recent_messages": messages_to_dict(self.recent_messages),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationState":
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        summary = data.get("summary") or ""
        if not isinstance(summary, str):
            raise ValueError("summary must be a string")
        recent = messages_from_dict(data.get("recent_messages") or [])
        return cls(summary=summary, recent_messages=recent)


class ArchiveReason(str, Enum):
    FOLDED = "folded"
    OVERSIZED_INPUT = "oversized_input"
    EVICTED = "evicted"


@dataclass(frozen=True)
class HistoryArchiveEntry:
    id: str
    role: str
    content: str
    tokens: int
    created_at: str
    reason: ArchiveReason
    name: Optional[str] = None
    tool_call_id: Optional[str] = None

    @classmethod
    def from_message(
        cls,
        msg: BaseMessage,
        reason: ArchiveReason,
        counter: TokenCounter = estimate_tokens,
    ) -> "HistoryArchiveEntry":
        return cls(
            id=uuid.uuid4().hex,
            role=role_of(msg),
            content=message_text(msg),
            tokens=count_message_tokens(msg, counter),
            created_at=datetime.now(timezone.utc).isoformat(),
            reason=reason,
            name=getattr(msg, "name", None),
            tool_call_id=getattr(msg, "tool_call_id", None),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "tokens": self.tokens,
            "created_at": self.created_at,
            "reason": self.reason.value,
            "name": self.name,
            "tool_call_id": self.tool_call_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryArchiveEntry":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data.get("content") or "",
            tokens=int(data.get("tokens", 0)),
            created_at=data["created_at"],
            reason=ArchiveReason(data["reason"]),
            name=data.get("name"),
            tool_call_id=data.get("tool_call_id"),
        )

    def to_message(self) -> BaseMessage:
        """Rebuild a LangChain message from the archived text."""
        if self.role == "user":
            return HumanMessage(content=self.content, name=self.name)
        if self.role == "assistant":
            return AIMessage(content=self.content, name=self.name)
        if self.role == "tool":
            return ToolMessage(
                content=self.content,
                tool_call_id=self.tool_call_id or self.id,
                name=self.name,
            )
        return SystemMessage(content=self.content, name=self.name)
