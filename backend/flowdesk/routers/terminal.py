from __future__ import annotations

import asyncio
import json
import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from flowdesk.dependencies import AppServices, get_services
from flowdesk.terminal.constants import DEFAULT_COLS, DEFAULT_ROWS
from flowdesk.terminal.session import PtySession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["terminal"])


class TerminalCommand(BaseModel):
    type: Literal["input", "resize", "kill"]
    data: str = ""
    cols: int = Field(default=DEFAULT_COLS, gt=0)
    rows: int = Field(default=DEFAULT_ROWS, gt=0)


async def _forward(ws: WebSocket, session: PtySession) -> None:
    async for event in session.events():
        if event.type == "data":
            await ws.send_bytes(event.data)
        else:
            await ws.send_text(json.dumps({"type": "exit", "exit_code": event.exit_code}))


@router.websocket("/ws/terminal/{pane_id}")
async def terminal_ws(
    ws: WebSocket,
    pane_id: str,
    workspace_id: str = "",
    cwd: str | None = None,
    cols: int = DEFAULT_COLS,
    rows: int = DEFAULT_ROWS,
):
    await ws.accept()
    services = get_services(ws)
    terminals = services.terminal_service

    session = terminals.attach(pane_id)
    if session is None:
        session = terminals.create_session(
            pane_id,
            workspace_id,
            cwd or str(terminals.config.ROOT_DIR),
            cols=cols,
            rows=rows,
        )

    forwarder = asyncio.create_task(_forward(ws, session))
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("bytes") is not None:
                terminals.write(pane_id, message["bytes"])
                continue

            try:
                command = TerminalCommand.model_validate_json(message.get("text") or "")
            except ValidationError as e:
                logger.debug("Terminal %s: ignoring invalid frame (%d errors)", pane_id, e.error_count())
                continue

            if command.type == "input":
                terminals.write(pane_id, command.data)
            elif command.type == "resize":
                terminals.resize(pane_id, command.cols, command.rows)
            elif command.type == "kill":
                terminals.kill(pane_id)
    except WebSocketDisconnect:
        pass
    finally:
        # A dropped connection leaves the shell running for a later attach
        terminals.detach(pane_id)
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)
        logger.info("Terminal %s: websocket closed", pane_id)


@router.get("/terminals/{pane_id}")
async def get_terminal(pane_id: str, services: AppServices = Depends(get_services)):
    session = services.terminal_service.get(pane_id)
    if session is None:
        raise HTTPException(404, "Terminal not found")
    return {
        "pane_id": session.pane_id,
        "workspace_id": session.workspace_id,
        "cwd": session.cwd,
        "connected": session.connected,
        "detached": session.detached,
    }


@router.delete("/terminals/{pane_id}", status_code=204)
async def kill_terminal(pane_id: str, services: AppServices = Depends(get_services)):
    if not services.terminal_service.kill(pane_id):
        raise HTTPException(404, "Terminal not found")
