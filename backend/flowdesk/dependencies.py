from __future__ import annotations

from dataclasses import dataclass, field

from fastapi.requests import HTTPConnection

from flowdesk.agent.chat_state import ChatSessionState
from flowdesk.agent.session import AgentService
from flowdesk.registry import SessionRegistry
from flowdesk.services.chat_repository import ChatRepository
from flowdesk.terminal.session import TerminalService


@dataclass
class AppServices:
    """Every long-lived collaborator of the app, built once in ``create_app``."""

    agent_service: AgentService
    terminal_service: TerminalService
    chat_repository: ChatRepository
    chat_sessions: SessionRegistry[ChatSessionState] = field(
        default_factory=lambda: SessionRegistry("chats")
    )


def get_services(conn: HTTPConnection) -> AppServices:
    return conn.app.state.services
