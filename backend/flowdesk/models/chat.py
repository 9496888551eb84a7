from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChatMode(str, enum.Enum):
    PLAN = "plan"  # read-only analysis, requires approval to execute
    AGENT = "agent"  # full execution permissions


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class ChatMessage:
    chat_id: str
    role: MessageRole
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row) -> ChatMessage:
        return cls(
            id=row["id"],
            chat_id=row["chat_id"],
            role=MessageRole(row["role"]),
            content=row["content"],
            created_at=row["created_at"],
        )


@dataclass
class Chat:
    workspace_id: str
    title: str
    mode: ChatMode = ChatMode.AGENT
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=_utcnow)
    updated_at: str = field(default_factory=_utcnow)
    has_pending_plan: bool = False
    messages: list[ChatMessage] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "title": self.title,
            "mode": self.mode.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "has_pending_plan": self.has_pending_plan,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_row(cls, row) -> Chat:
        return cls(
            id=row["id"],
            workspace_id=row["workspace_id"],
            title=row["title"],
            mode=ChatMode(row["mode"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            has_pending_plan=bool(row["has_pending_plan"]),
        )
