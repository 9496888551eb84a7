from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flowdesk.agent.session import AgentService
from flowdesk.config import Settings, settings as default_settings
from flowdesk.db import init_db
from flowdesk.dependencies import AppServices
from flowdesk.routers import chat, terminal
from flowdesk.services.chat_repository import ChatRepository
from flowdesk.terminal.session import TerminalService

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_services(config: Settings) -> AppServices:
    return AppServices(
        agent_service=AgentService(config=config),
        terminal_service=TerminalService(config=config),
        chat_repository=ChatRepository(config.DB_PATH),
    )


async def shutdown_services(services: AppServices) -> None:
    """Stop every chat run, agent execution and terminal."""
    for workspace_id, state in services.chat_sessions.drain():
        try:
            await state.close()
        except Exception:
            logger.exception("Failed to close chat %s", workspace_id)
    await services.agent_service.aclose()
    await services.terminal_service.shutdown()


def create_app(config: Settings | None = None, services: AppServices | None = None) -> FastAPI:
    config = config or default_settings
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        config.DATA_DIR.mkdir(parents=True, exist_ok=True)
        await init_db(services.chat_repository.db_path or config.DB_PATH)
        logger.info("%s started", config.APP_NAME)
        yield
        # Shutdown
        await shutdown_services(services)
        logger.info("%s stopped", config.APP_NAME)

    app = FastAPI(title=config.APP_NAME, version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat.router)
    app.include_router(terminal.router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "ok",
            "service": config.APP_NAME,
            "executions": len(services.agent_service.running_executions()),
            "terminals": len(services.terminal_service.registry),
        }

    return app


configure_logging(default_settings.LOG_LEVEL)
app = create_app()
