"""ChatSessionState — consumes AgentEvents and keeps the chat's live state.

States: idle -> processing -> idle (or idle with a pending plan).

A send while processing is rejected unless forced; plan approval always
forces an Agent-mode run. Message deltas append to the single in-flight
assistant message. Tool rows are keyed by the provider call id when there is
one, else by tool name, and leave the visible list a fixed delay after they
reach a terminal status. The final assistant content is persisted once,
after the event sequence ends.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, AsyncIterator, Callable

from flowdesk.agent.constants import CHAT_TITLE_MAX_CHARS, PLAN_APPROVAL_MESSAGE, SUMMARY_CANCELLED
from flowdesk.agent.events import (
    AgentEvent,
    AgentRequest,
    CompletedEvent,
    ErrorEvent,
    MessageEvent,
    ThinkingEvent,
    ToolCallEvent,
    ToolCallStatus,
)
from flowdesk.config import settings
from flowdesk.models.chat import ChatMode, MessageRole
from flowdesk.registry import CancellationToken

if TYPE_CHECKING:
    from flowdesk.agent.session import AgentService
    from flowdesk.services.chat_repository import ChatRepository

logger = logging.getLogger(__name__)

ERROR_MARKER = "\n❌ Error: "
CANCELLED_MARKER = "\n\n⚫ Cancelled"

_TERMINAL_STATUSES = (ToolCallStatus.COMPLETED, ToolCallStatus.ERROR)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class ChatMessageState:
    role: MessageRole
    content: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    is_streaming: bool = False
    is_error: bool = False
    reasoning: str = ""

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "is_streaming": self.is_streaming,
            "is_error": self.is_error,
        }


@dataclass(eq=False)
class ToolCallViewState:
    tool_name: str
    status: ToolCallStatus
    input: str | None = None
    output: str | None = None
    call_id: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "tool_name": self.tool_name,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "call_id": self.call_id,
            "timestamp": self.timestamp.isoformat(),
        }


class ChatSessionState:
    def __init__(
        self,
        agent_service: AgentService,
        chat_repository: ChatRepository | None = None,
        *,
        workspace_id: str,
        mode: ChatMode = ChatMode.AGENT,
        removal_delay: float | None = None,
        listener: Callable[[AgentEvent], object] | None = None,
    ) -> None:
        self.agent_service = agent_service
        self.chat_repository = chat_repository
        self.workspace_id = workspace_id
        self.mode = mode
        self.removal_delay = (
            settings.TOOL_CALL_REMOVAL_DELAY_SECONDS if removal_delay is None else removal_delay
        )
        self.listener = listener

        self.messages: list[ChatMessageState] = []
        self.active_tool_calls: list[ToolCallViewState] = []
        self.tool_calls: list[ToolCallViewState] = []
        self.is_processing = False
        self.has_pending_plan = False
        self.chat_id: str | None = None
        self.execution_id: str | None = None

        self._current_message: ChatMessageState | None = None
        self._cancel_token: CancellationToken | None = None
        self._removal_tasks: dict[int, asyncio.Task] = {}

    # ── Commands ────────────────────────────────────────────────

    async def send(self, message: str | None, *, force: bool = False) -> bool:
        """Send a user message. Returns False when the send was rejected."""
        if not message or not message.strip():
            return False
        if self.is_processing and not force:
            logger.debug("Chat %s: send rejected, already processing", self.workspace_id)
            return False

        request = AgentRequest(
            message=message,
            workspace_id=self.workspace_id,
            mode=self.mode,
            history=self._history(),
        )
        await self._run(message, lambda token: self.agent_service.send(request, token))
        return True

    async def approve_plan(self) -> None:
        """Leave the pending plan and run it in Agent mode, regardless of the send guard."""
        plan = self._last_assistant_content()
        self.has_pending_plan = False
        self.mode = ChatMode.AGENT
        if self.chat_id and self.chat_repository is not None:
            await self.chat_repository.set_pending_plan(self.chat_id, False)
        if self.is_processing:
            self.cancel()

        await self._run(
            PLAN_APPROVAL_MESSAGE,
            lambda token: self.agent_service.execute_plan(self.workspace_id, plan, token),
        )

    def cancel(self) -> None:
        if self._cancel_token is not None:
            self._cancel_token.cancel()
        if self.execution_id is not None:
            self.agent_service.cancel(self.execution_id)

    def switch_mode(self) -> ChatMode:
        self.mode = ChatMode.PLAN if self.mode == ChatMode.AGENT else ChatMode.AGENT
        return self.mode

    def clear(self) -> None:
        self._cancel_removals()
        self.messages.clear()
        self.active_tool_calls.clear()
        self.tool_calls.clear()
        self.chat_id = None

    async def load_history(self) -> None:
        """Load the most recent chat of the workspace."""
        if self.chat_repository is None:
            return
        self.messages.clear()
        chats = await self.chat_repository.get_by_workspace(self.workspace_id)
        if not chats:
            return
        chat = chats[0]
        self.chat_id = chat.id
        self.mode = chat.mode
        self.has_pending_plan = chat.has_pending_plan
        for m in chat.messages:
            self.messages.append(
                ChatMessageState(
                    role=m.role,
                    content=m.content,
                    timestamp=datetime.fromisoformat(m.created_at),
                )
            )

    async def close(self) -> None:
        """Cancel the in-flight run and every pending tool row removal."""
        self.cancel()
        tasks = list(self._removal_tasks.values())
        self._cancel_removals()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Event handling ──────────────────────────────────────────

    def apply(self, event: AgentEvent, message: ChatMessageState | None = None) -> None:
        message = message or self._current_message
        if message is None:
            message = ChatMessageState(role=MessageRole.ASSISTANT, is_streaming=True)
            self.messages.append(message)
            self._current_message = message

        if isinstance(event, MessageEvent):
            message.content += event.content

        elif isinstance(event, ToolCallEvent):
            self._apply_tool_call(event, message)

        elif isinstance(event, ThinkingEvent):
            message.reasoning += event.reasoning

        elif isinstance(event, ErrorEvent):
            message.is_error = True
            message.content += f"{ERROR_MARKER}{event.error}"

        elif isinstance(event, CompletedEvent):
            message.is_streaming = False
            if message is self._current_message:
                self.is_processing = False
            self.has_pending_plan = False
            if not event.success:
                message.is_error = True
                if event.summary == SUMMARY_CANCELLED:
                    message.content += CANCELLED_MARKER

        if self.listener is not None:
            self.listener(event)

    def _apply_tool_call(self, event: ToolCallEvent, message: ChatMessageState) -> None:
        if event.status in _TERMINAL_STATUSES:
            row = self._find_row(event) or self._oldest_running_row()
            if row is not None:
                row.status = event.status
                row.output = event.output
                self._schedule_removal(row)
            if event.status == ToolCallStatus.ERROR:
                message.is_error = True
            return

        row = self._find_row(event)
        if row is None:
            row = ToolCallViewState(
                tool_name=event.tool_name,
                status=event.status,
                input=event.input,
                call_id=event.call_id,
                timestamp=event.timestamp,
            )
            self.active_tool_calls.append(row)
            self.tool_calls.append(row)
        else:
            row.status = event.status
            if event.input is not None:
                row.input = event.input

    def _find_row(self, event: ToolCallEvent) -> ToolCallViewState | None:
        if event.call_id is not None:
            for row in self.active_tool_calls:
                if row.call_id == event.call_id:
                    return row
            if event.status not in _TERMINAL_STATUSES:
                return None
        for row in self.active_tool_calls:
            if row.tool_name == event.tool_name and row.status not in _TERMINAL_STATUSES:
                return row
        return None

    def _oldest_running_row(self) -> ToolCallViewState | None:
        for row in self.active_tool_calls:
            if row.status not in _TERMINAL_STATUSES:
                return row
        return None

    def _schedule_removal(self, row: ToolCallViewState) -> None:
        key = id(row)
        if key in self._removal_tasks:
            return
        task = asyncio.create_task(self._remove_after_delay(row))
        self._removal_tasks[key] = task
        task.add_done_callback(lambda _: self._removal_tasks.pop(key, None))

    async def _remove_after_delay(self, row: ToolCallViewState) -> None:
        await asyncio.sleep(self.removal_delay)
        if row in self.active_tool_calls:
            self.active_tool_calls.remove(row)

    def _cancel_removals(self) -> None:
        for task in list(self._removal_tasks.values()):
            task.cancel()
        self._removal_tasks.clear()

    # ── Internals ───────────────────────────────────────────────

    async def _run(
        self,
        user_text: str,
        start: Callable[[CancellationToken], AsyncIterator[AgentEvent]],
    ) -> None:
        mode = self.mode
        self.is_processing = True
        self.tool_calls = []
        token = CancellationToken()
        self._cancel_token = token

        self.messages.append(ChatMessageState(role=MessageRole.USER, content=user_text))
        assistant = ChatMessageState(role=MessageRole.ASSISTANT, is_streaming=True)
        self._current_message = assistant
        success = False

        try:
            await self._ensure_chat(user_text)
            await self._persist(MessageRole.USER, user_text)
            self.messages.append(assistant)

            async for event in start(token):
                if self._cancel_token is token:
                    self.execution_id = event.execution_id
                if isinstance(event, CompletedEvent):
                    success = event.success
                self.apply(event, assistant)
        except Exception as e:
            logger.exception("Chat %s: run failed", self.workspace_id)
            if assistant not in self.messages:
                self.messages.append(assistant)
            assistant.is_error = True
            assistant.content += f"{ERROR_MARKER}{e}"
        finally:
            assistant.is_streaming = False
            if self._cancel_token is token:
                self.is_processing = False
                self._cancel_token = None
                self.execution_id = None

        await self._persist(MessageRole.ASSISTANT, assistant.content)

        if mode == ChatMode.PLAN and success and assistant.content.strip():
            self.has_pending_plan = True
            if self.chat_id and self.chat_repository is not None:
                await self.chat_repository.set_pending_plan(self.chat_id, True)

    async def _ensure_chat(self, user_text: str) -> None:
        if self.chat_id is not None or self.chat_repository is None:
            return
        title = user_text
        if len(title) > CHAT_TITLE_MAX_CHARS:
            title = title[:CHAT_TITLE_MAX_CHARS] + "..."
        chat = await self.chat_repository.create_chat(self.workspace_id, title, self.mode)
        self.chat_id = chat.id

    async def _persist(self, role: MessageRole, content: str) -> None:
        if self.chat_id is None or self.chat_repository is None:
            return
        try:
            await self.chat_repository.add_message(self.chat_id, role, content)
        except Exception:
            logger.exception("Chat %s: failed to persist %s message", self.chat_id, role.value)

    def _history(self) -> tuple[dict, ...]:
        return tuple(
            {"role": m.role.value, "content": m.content}
            for m in self.messages
            if m.role in (MessageRole.USER, MessageRole.ASSISTANT)
            and m.content.strip()
            and not m.is_error
        )

    def _last_assistant_content(self) -> str | None:
        for m in reversed(self.messages):
            if m.role == MessageRole.ASSISTANT and m.content.strip():
                return m.content
        return None

    def snapshot(self) -> dict:
        return {
            "workspace_id": self.workspace_id,
            "chat_id": self.chat_id,
            "mode": self.mode.value,
            "is_processing": self.is_processing,
            "has_pending_plan": self.has_pending_plan,
            "execution_id": self.execution_id,
            "active_tool_calls": [t.to_dict() for t in self.active_tool_calls],
        }
