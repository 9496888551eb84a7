"""Tests for ChatSessionState, driven by a scripted agent service."""

from __future__ import annotations

import asyncio
import dataclasses

from flowdesk.agent.chat_state import ChatSessionState
from flowdesk.agent.events import (
    AgentRequest,
    CompletedEvent,
    ErrorEvent,
    MessageEvent,
    ThinkingEvent,
    ToolCallEvent,
    ToolCallStatus,
)
from flowdesk.models.chat import Chat, ChatMessage, ChatMode, MessageRole

EXECUTION_ID = "exec-1"


class ScriptedAgentService:
    """Replays one scripted event list per send; honours the cancel token."""

    def __init__(self, *scripts: list) -> None:
        self.scripts = list(scripts)
        self.requests: list[AgentRequest] = []
        self.plans: list[str | None] = []
        self.cancelled: list[str] = []

    async def send(self, request, cancel_token=None):
        self.requests.append(request)
        for event in self.scripts.pop(0):
            if cancel_token is not None and cancel_token.is_cancelled:
                yield CompletedEvent(success=False, summary="cancelled", execution_id=EXECUTION_ID)
                return
            yield dataclasses.replace(event, execution_id=EXECUTION_ID)
            await asyncio.sleep(0)

    async def execute_plan(self, workspace_id, plan=None, cancel_token=None):
        self.plans.append(plan)
        request = AgentRequest(message="Execute the approved plan", workspace_id=workspace_id)
        async for event in self.send(request, cancel_token):
            yield event

    def cancel(self, execution_id):
        self.cancelled.append(execution_id)


class MemoryChatRepository:
    def __init__(self) -> None:
        self.chats: list[Chat] = []
        self.messages: list[ChatMessage] = []
        self.pending: list[bool] = []

    async def create_chat(self, workspace_id, title, mode=ChatMode.AGENT):
        chat = Chat(workspace_id=workspace_id, title=title, mode=mode)
        self.chats.append(chat)
        return chat

    async def add_message(self, chat_id, role, content):
        message = ChatMessage(chat_id=chat_id, role=role, content=content)
        self.messages.append(message)
        return message

    async def set_pending_plan(self, chat_id, pending):
        self.pending.append(pending)

    async def get_by_workspace(self, workspace_id):
        return [c for c in reversed(self.chats) if c.workspace_id == workspace_id]


def running(name, call_id=None):
    return ToolCallEvent(tool_name=name, status=ToolCallStatus.RUNNING, call_id=call_id)


def finished(call_id=None, output="ok", status=ToolCallStatus.COMPLETED):
    return ToolCallEvent(tool_name="result", status=status, output=output, call_id=call_id)


def done(success=True, summary="Agent execution completed"):
    return CompletedEvent(success=success, summary=summary)


def make_state(*scripts, repository=None, **kwargs) -> tuple[ChatSessionState, ScriptedAgentService]:
    agent = ScriptedAgentService(*scripts)
    kwargs.setdefault("removal_delay", 0.01)
    state = ChatSessionState(agent, repository, workspace_id="ws", **kwargs)
    return state, agent


# ── Sending ─────────────────────────────────────────────────────


def test_message_deltas_concatenate_into_one_assistant_message():
    state, _ = make_state(
        [MessageEvent(content="Hel"), MessageEvent(content="lo "), MessageEvent(content="there"), done()]
    )
    assert asyncio.run(state.send("hi")) is True

    assert [m.role for m in state.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assistant = state.messages[1]
    assert assistant.content == "Hello there"
    assert assistant.is_streaming is False
    assert assistant.is_error is False
    assert state.is_processing is False
    assert state.execution_id is None


def test_send_rejected_while_processing_unless_forced():
    state, agent = make_state([done()])
    state.is_processing = True
    assert asyncio.run(state.send("second")) is False
    assert agent.requests == []

    assert asyncio.run(state.send("second", force=True)) is True
    assert len(agent.requests) == 1


def test_blank_message_is_rejected():
    state, agent = make_state()
    assert asyncio.run(state.send("  ")) is False
    assert asyncio.run(state.send(None)) is False
    assert state.messages == []


def test_history_is_sent_with_follow_up():
    state, agent = make_state([MessageEvent(content="first answer"), done()], [done()])

    async def scenario():
        await state.send("first")
        await state.send("second")

    asyncio.run(scenario())
    history = agent.requests[1].history
    assert [h["content"] for h in history] == ["first", "first answer"]


def test_error_event_appends_marker():
    state, _ = make_state([MessageEvent(content="partial"), ErrorEvent(error="boom"), done(False, "failed")])
    asyncio.run(state.send("go"))
    assistant = state.messages[-1]
    assert assistant.content == "partial\n❌ Error: boom"
    assert assistant.is_error is True


def test_cancel_during_run_marks_message_cancelled():
    state, agent = make_state([MessageEvent(content="partial"), MessageEvent(content="more"), done()])
    state.listener = lambda event: state.cancel() if isinstance(event, MessageEvent) else None

    asyncio.run(state.send("go"))
    assistant = state.messages[-1]
    assert assistant.content == "partial\n\n⚫ Cancelled"
    assert assistant.is_error is True
    assert agent.cancelled == [EXECUTION_ID]
    assert state.is_processing is False


def test_thinking_is_kept_apart_from_content():
    state, _ = make_state([ThinkingEvent(reasoning="let me see"), MessageEvent(content="answer"), done()])
    asyncio.run(state.send("go"))
    assert state.messages[-1].content == "answer"
    assert state.messages[-1].reasoning == "let me see"


def test_listener_sees_every_event():
    seen = []
    state, _ = make_state([MessageEvent(content="a"), done()], listener=seen.append)
    asyncio.run(state.send("go"))
    assert [type(e) for e in seen] == [MessageEvent, CompletedEvent]


# ── Tool rows ───────────────────────────────────────────────────


def test_tool_row_removed_after_delay():
    state, _ = make_state([running("Bash", "t1"), finished("t1", "files"), done()], removal_delay=0.05)

    async def scenario():
        await state.send("go")
        visible = [(t.tool_name, t.status, t.output) for t in state.active_tool_calls]
        await asyncio.sleep(0.2)
        return visible

    visible = asyncio.run(scenario())
    assert visible == [("Bash", ToolCallStatus.COMPLETED, "files")]
    assert state.active_tool_calls == []
    assert state.tool_calls[0].status == ToolCallStatus.COMPLETED


def test_close_cancels_pending_removal():
    state, _ = make_state([running("Bash", "t1"), finished("t1"), done()], removal_delay=30)

    async def scenario():
        await state.send("go")
        await state.close()
        await asyncio.sleep(0)

    asyncio.run(scenario())
    assert len(state.active_tool_calls) == 1
    assert state._removal_tasks == {}


def test_same_tool_twice_gets_two_rows_by_call_id():
    state, _ = make_state(
        [running("Read", "a"), running("Read", "b"), finished("b", "second"), done()],
        removal_delay=30,
    )

    async def scenario():
        await state.send("go")
        rows = [(t.call_id, t.status, t.output) for t in state.active_tool_calls]
        await state.close()
        return rows

    rows = asyncio.run(scenario())
    assert rows == [
        ("a", ToolCallStatus.RUNNING, None),
        ("b", ToolCallStatus.COMPLETED, "second"),
    ]


def test_repeated_running_without_call_id_updates_same_row():
    state, _ = make_state([running("Bash"), running("Bash"), finished(), done()], removal_delay=30)

    async def scenario():
        await state.send("go")
        rows = list(state.active_tool_calls)
        await state.close()
        return rows

    rows = asyncio.run(scenario())
    assert len(rows) == 1
    assert rows[0].status == ToolCallStatus.COMPLETED


def test_tool_error_flags_message():
    state, _ = make_state([running("Bash", "t1"), finished("t1", "denied", ToolCallStatus.ERROR), done()])
    asyncio.run(state.send("go"))
    assert state.messages[-1].is_error is True
    assert state.tool_calls[0].status == ToolCallStatus.ERROR


# ── Plans & persistence ─────────────────────────────────────────


def test_plan_run_sets_pending_plan_and_approval_executes_it():
    repository = MemoryChatRepository()
    state, agent = make_state(
        [MessageEvent(content="1. read\n2. write"), done()],
        [MessageEvent(content="done"), done()],
        repository=repository,
        mode=ChatMode.PLAN,
    )

    async def scenario():
        await state.send("refactor the parser")
        pending = state.has_pending_plan
        await state.approve_plan()
        return pending

    assert asyncio.run(scenario()) is True
    assert agent.requests[0].mode == ChatMode.PLAN
    assert agent.plans == ["1. read\n2. write"]
    assert state.mode == ChatMode.AGENT
    assert state.has_pending_plan is False
    assert repository.pending == [True, False]


class LingeringAgentService:
    """The first run ignores cancellation and emits late events once released."""

    def __init__(self) -> None:
        self.release_old = asyncio.Event()
        self.release_new = asyncio.Event()
        self.cancelled: list[str] = []

    async def send(self, request, cancel_token=None):
        yield MessageEvent(content="plan", execution_id="old")
        await self.release_old.wait()
        yield MessageEvent(content=" late", execution_id="old")
        yield CompletedEvent(success=False, summary="cancelled", execution_id="old")

    async def execute_plan(self, workspace_id, plan=None, cancel_token=None):
        yield MessageEvent(content="working", execution_id="new")
        await self.release_new.wait()
        yield CompletedEvent(success=True, summary="done", execution_id="new")

    def cancel(self, execution_id):
        self.cancelled.append(execution_id)


def test_approval_during_run_keeps_new_execution_id():
    agent = LingeringAgentService()
    state = ChatSessionState(agent, workspace_id="ws", removal_delay=0)

    async def wait_for_execution(execution_id):
        while state.execution_id != execution_id:
            await asyncio.sleep(0.01)

    async def scenario():
        old = asyncio.create_task(state.send("plan it"))
        await asyncio.wait_for(wait_for_execution("old"), 5)
        new = asyncio.create_task(state.approve_plan())
        await asyncio.wait_for(wait_for_execution("new"), 5)

        agent.release_old.set()
        await asyncio.wait_for(old, 5)
        during = (state.execution_id, state.is_processing)

        agent.release_new.set()
        await asyncio.wait_for(new, 5)
        return during

    during = asyncio.run(scenario())
    assert during == ("new", True)
    assert agent.cancelled == ["old"]
    assert state.execution_id is None
    assert state.is_processing is False


def test_failed_plan_run_leaves_no_pending_plan():
    state, _ = make_state([MessageEvent(content="half"), done(False, "failed")], mode=ChatMode.PLAN)
    asyncio.run(state.send("plan it"))
    assert state.has_pending_plan is False


def test_chat_created_and_messages_persisted_once():
    repository = MemoryChatRepository()
    state, _ = make_state(
        [MessageEvent(content="a"), MessageEvent(content="b"), done()],
        repository=repository,
    )
    long_message = "x" * 80
    asyncio.run(state.send(long_message))

    assert len(repository.chats) == 1
    assert repository.chats[0].title == "x" * 50 + "..."
    assert state.chat_id == repository.chats[0].id
    assert [(m.role, m.content) for m in repository.messages] == [
        (MessageRole.USER, long_message),
        (MessageRole.ASSISTANT, "ab"),
    ]


def test_load_history_restores_latest_chat():
    repository = MemoryChatRepository()

    async def scenario():
        chat = await repository.create_chat("ws", "old", ChatMode.PLAN)
        chat.has_pending_plan = True
        chat.messages = [
            ChatMessage(chat_id=chat.id, role=MessageRole.USER, content="q"),
            ChatMessage(chat_id=chat.id, role=MessageRole.ASSISTANT, content="a"),
        ]
        state, _ = make_state(repository=repository)
        await state.load_history()
        return state, chat

    state, chat = asyncio.run(scenario())
    assert state.chat_id == chat.id
    assert state.mode == ChatMode.PLAN
    assert state.has_pending_plan is True
    assert [m.content for m in state.messages] == ["q", "a"]


def test_switch_mode_and_clear():
    state, _ = make_state([MessageEvent(content="a"), done()])
    assert state.switch_mode() == ChatMode.PLAN
    assert state.switch_mode() == ChatMode.AGENT
    asyncio.run(state.send("go"))
    state.clear()
    assert state.messages == []
    assert state.active_tool_calls == []
    assert state.chat_id is None
