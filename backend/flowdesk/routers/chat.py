from __future__ import annotations

import asyncio
import json
import logging
from typing import Literal

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from flowdesk.agent.chat_state import ChatSessionState
from flowdesk.agent.events import AgentEvent
from flowdesk.dependencies import AppServices, get_services
from flowdesk.models.chat import ChatMode

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


class ChatCommand(BaseModel):
    type: Literal["send", "cancel", "approve_plan", "switch_mode", "clear"]
    message: str | None = None
    mode: ChatMode | None = None


async def _get_or_create_state(services: AppServices, workspace_id: str) -> ChatSessionState:
    state = services.chat_sessions.get(workspace_id)
    if state is not None:
        return state
    state = ChatSessionState(
        services.agent_service,
        services.chat_repository,
        workspace_id=workspace_id,
    )
    await state.load_history()
    try:
        services.chat_sessions.add(workspace_id, state)
    except KeyError:
        # Another connection registered the workspace while history loaded
        return services.chat_sessions.get(workspace_id) or state
    return state


def _state_message(state: ChatSessionState) -> dict:
    return {"type": "state", **state.snapshot()}


@router.websocket("/ws/chat/{workspace_id}")
async def chat_ws(ws: WebSocket, workspace_id: str):
    await ws.accept()
    services = get_services(ws)
    state = await _get_or_create_state(services, workspace_id)

    outgoing: asyncio.Queue[dict] = asyncio.Queue()

    def on_event(event: AgentEvent) -> None:
        outgoing.put_nowait(event.to_dict())

    state.listener = on_event
    runs: set[asyncio.Task] = set()

    async def pump() -> None:
        while True:
            await ws.send_text(json.dumps(await outgoing.get()))

    async def run(command: ChatCommand) -> None:
        try:
            if command.type == "approve_plan":
                await state.approve_plan()
            else:
                accepted = await state.send(command.message)
                if not accepted:
                    outgoing.put_nowait({"type": "rejected", "message": command.message})
        except Exception:
            logger.exception("Chat %s: command %s failed", workspace_id, command.type)
            outgoing.put_nowait({"type": "error", "error": "Internal error"})
        outgoing.put_nowait(_state_message(state))

    def start(command: ChatCommand) -> None:
        task = asyncio.create_task(run(command))
        runs.add(task)
        task.add_done_callback(runs.discard)

    sender = asyncio.create_task(pump())
    outgoing.put_nowait(
        {"type": "history", "messages": [m.to_dict() for m in state.messages]}
    )
    outgoing.put_nowait(_state_message(state))

    try:
        while True:
            raw = await ws.receive_text()
            try:
                command = ChatCommand.model_validate_json(raw)
            except ValidationError as e:
                outgoing.put_nowait({"type": "error", "error": f"Invalid command: {e.error_count()} errors"})
                continue

            if command.type == "send":
                if command.mode is not None and command.mode != state.mode:
                    state.mode = command.mode
                start(command)
            elif command.type == "approve_plan":
                start(command)
            elif command.type == "cancel":
                state.cancel()
            elif command.type == "switch_mode":
                mode = state.switch_mode()
                if state.chat_id and state.chat_repository is not None:
                    await state.chat_repository.set_mode(state.chat_id, mode)
                outgoing.put_nowait(_state_message(state))
            elif command.type == "clear":
                state.clear()
                outgoing.put_nowait(_state_message(state))

    except WebSocketDisconnect:
        logger.info("Chat %s: websocket disconnected", workspace_id)
    finally:
        state.listener = None
        if runs:
            state.cancel()
            await asyncio.gather(*runs, return_exceptions=True)
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)


@router.get("/workspaces/{workspace_id}/chats")
async def list_chats(workspace_id: str, services: AppServices = Depends(get_services)):
    """Chats of a workspace, most recent first, with their messages."""
    chats = await services.chat_repository.get_by_workspace(workspace_id)
    return [c.to_dict() for c in chats]
