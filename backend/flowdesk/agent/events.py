"""Agent events — the closed set of things an execution can emit.

Consumers dispatch on the concrete class (``match``/``isinstance``). Every
execution ends with exactly one ``CompletedEvent``.

Known kinds (``to_dict()["type"]``):
    message    — assistant text delta: content, role
    tool_call  — tool activity: tool_name, input, output, status, call_id
    thinking   — reasoning delta
    error      — request-level failure; a CompletedEvent still follows
    completed  — end of the sequence: success, summary
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Union

from flowdesk.models.chat import ChatMode, MessageRole


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ToolCallStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class AgentRequest:
    message: str
    workspace_id: str
    mode: ChatMode = ChatMode.AGENT
    attachment_paths: tuple[str, ...] = ()
    # Prior turns as {"role", "content"} dicts, oldest first
    history: tuple[dict, ...] = ()

    def __post_init__(self) -> None:
        if not self.message or not self.message.strip():
            raise ValueError("AgentRequest.message must be non-empty")


@dataclass(frozen=True)
class MessageEvent:
    content: str
    role: MessageRole = MessageRole.ASSISTANT
    execution_id: str = ""
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "type": "message",
            "execution_id": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
            "content": self.content,
            "role": self.role.value,
        }


@dataclass(frozen=True)
class ToolCallEvent:
    tool_name: str
    status: ToolCallStatus
    input: str | None = None
    output: str | None = None
    call_id: str | None = None
    execution_id: str = ""
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "type": "tool_call",
            "execution_id": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
            "tool_name": self.tool_name,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "call_id": self.call_id,
        }


@dataclass(frozen=True)
class ThinkingEvent:
    reasoning: str
    execution_id: str = ""
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "type": "thinking",
            "execution_id": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class ErrorEvent:
    error: str
    execution_id: str = ""
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "type": "error",
            "execution_id": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
            "error": self.error,
        }


@dataclass(frozen=True)
class CompletedEvent:
    success: bool
    summary: str | None = None
    execution_id: str = ""
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "type": "completed",
            "execution_id": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "summary": self.summary,
        }


AgentEvent = Union[MessageEvent, ToolCallEvent, ThinkingEvent, ErrorEvent, CompletedEvent]
