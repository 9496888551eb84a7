"""AgentService — one cancellable streaming execution per request.

Public interface (what ChatSessionState and the websocket layer expect):
    send(request, cancel_token=None) -> AsyncIterator[AgentEvent]
    execute_plan(workspace_id, plan=None, cancel_token=None) -> AsyncIterator[AgentEvent]
    cancel(execution_id) -> None
    cancel_all() -> None
    aclose() -> None

Each ``send`` call registers a CancellationToken under a fresh execution id
and removes it exactly once when the sequence ends, however it ends. The
HTTP stream is read by a producer task; cancelling the token cancels that
task, so cancellation lands on the next await (HTTP response or next line).
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from typing import AsyncIterator

import httpx

from flowdesk.agent.constants import (
    ERROR_BODY_MAX_CHARS,
    LLM_MAX_RETRIES,
    LLM_RETRY_BASE_DELAY_SECONDS,
    PLAN_APPROVAL_MESSAGE,
    SUMMARY_CANCELLED,
    SUMMARY_COMPLETED,
    SUMMARY_FAILED,
)
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
from flowdesk.agent.llm import create_client, open_message_stream
from flowdesk.agent.prompts import build_system_prompt, get_tools_for_mode
from flowdesk.agent.stream import StreamChunk, iter_chunks
from flowdesk.agent.tool_extractor import ToolCallExtractor
from flowdesk.config import Settings, settings as default_settings
from flowdesk.models.chat import ChatMode, MessageRole
from flowdesk.registry import CancellationToken, SessionRegistry

logger = logging.getLogger(__name__)


def _user_content(request: AgentRequest) -> str:
    if not request.attachment_paths:
        return request.message
    attached = "\n".join(f"- {p}" for p in request.attachment_paths)
    return f"{request.message}\n\nAttached files:\n{attached}"


class AgentService:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        registry: SessionRegistry[CancellationToken] | None = None,
        *,
        config: Settings | None = None,
        max_retries: int = LLM_MAX_RETRIES,
        retry_base_delay: float = LLM_RETRY_BASE_DELAY_SECONDS,
    ) -> None:
        self.config = config or default_settings
        self._owns_client = client is None
        self._client = client or create_client(self.config)
        self.registry: SessionRegistry[CancellationToken] = registry or SessionRegistry("executions")
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._extractor = ToolCallExtractor()

    # ── Request construction ────────────────────────────────────

    def build_payload(self, request: AgentRequest) -> dict:
        messages = [
            {"role": m["role"], "content": m["content"]} for m in request.history
        ]
        messages.append({"role": MessageRole.USER.value, "content": _user_content(request)})
        return {
            "model": self.config.ANTHROPIC_MODEL,
            "max_tokens": self.config.MAX_TOKENS,
            "stream": True,
            "messages": messages,
            "system": build_system_prompt(request.mode),
            "tools": get_tools_for_mode(request.mode),
        }

    # ── Main entry point ────────────────────────────────────────

    async def send(
        self,
        request: AgentRequest,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[AgentEvent]:
        execution_id = uuid.uuid4().hex
        token = CancellationToken(parent=cancel_token)
        self.registry.add(execution_id, token)

        queue: asyncio.Queue[AgentEvent | None] = asyncio.Queue()
        producer = asyncio.create_task(self._stream(execution_id, request, queue))
        # Also fires when the task is cancelled before it ever ran
        producer.add_done_callback(lambda _: queue.put_nowait(None))
        token.register(producer.cancel)

        logger.info(
            "Execution %s started (workspace=%s, mode=%s)",
            execution_id,
            request.workspace_id,
            request.mode.value,
        )
        completed = False
        try:
            while not completed:
                event = await queue.get()
                if event is None:
                    break
                completed = isinstance(event, CompletedEvent)
                yield event

            if not completed:
                summary = SUMMARY_CANCELLED if token.is_cancelled else SUMMARY_FAILED
                yield CompletedEvent(success=False, summary=summary, execution_id=execution_id)
        finally:
            try:
                if not producer.done():
                    producer.cancel()
                    await asyncio.wait([producer])
                if not producer.cancelled() and producer.exception() is not None:
                    logger.error(
                        "Execution %s producer failed",
                        execution_id,
                        exc_info=producer.exception(),
                    )
            finally:
                self.registry.remove(execution_id)
            logger.info("Execution %s finished", execution_id)

    async def execute_plan(
        self,
        workspace_id: str,
        plan: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Run an approved plan in Agent mode."""
        message = PLAN_APPROVAL_MESSAGE
        if plan:
            message = f"{PLAN_APPROVAL_MESSAGE}:\n\n{plan}"
        request = AgentRequest(message=message, workspace_id=workspace_id, mode=ChatMode.AGENT)
        async for event in self.send(request, cancel_token):
            yield event

    def cancel(self, execution_id: str) -> None:
        token = self.registry.pop(execution_id)
        if token is None:
            return
        logger.info("Cancelling execution %s", execution_id)
        token.cancel()

    def cancel_all(self) -> None:
        for execution_id, token in self.registry.drain():
            logger.info("Cancelling execution %s", execution_id)
            token.cancel()

    def running_executions(self) -> list[str]:
        return self.registry.keys()

    async def aclose(self) -> None:
        self.cancel_all()
        if self._owns_client:
            await self._client.aclose()

    # ── Producer ────────────────────────────────────────────────

    async def _stream(
        self,
        execution_id: str,
        request: AgentRequest,
        queue: asyncio.Queue[AgentEvent | None],
    ) -> None:
        def emit(event: AgentEvent) -> None:
            queue.put_nowait(dataclasses.replace(event, execution_id=execution_id))

        payload = self.build_payload(request)
        try:
            async with open_message_stream(
                self._client,
                payload,
                max_retries=self.max_retries,
                retry_base_delay=self.retry_base_delay,
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode(errors="replace")
                    logger.warning("Execution %s: API error %d", execution_id, response.status_code)
                    emit(ErrorEvent(error=f"API error: {response.status_code} - {body[:ERROR_BODY_MAX_CHARS]}"))
                    emit(CompletedEvent(success=False, summary=f"API error: {response.status_code}"))
                    return

                stream_failed = False
                async for chunk in iter_chunks(response.aiter_lines()):
                    for event in self._events_for_chunk(chunk):
                        if isinstance(event, ErrorEvent):
                            stream_failed = True
                        emit(event)

        except asyncio.CancelledError:
            logger.info("Execution %s cancelled", execution_id)
            raise
        except Exception as e:
            logger.exception("Execution %s failed", execution_id)
            emit(ErrorEvent(error=str(e) or type(e).__name__))
            emit(CompletedEvent(success=False, summary=SUMMARY_FAILED))
            return

        if stream_failed:
            emit(CompletedEvent(success=False, summary=SUMMARY_FAILED))
        else:
            emit(CompletedEvent(success=True, summary=SUMMARY_COMPLETED))

    def _events_for_chunk(self, chunk: StreamChunk) -> list[AgentEvent]:
        events: list[AgentEvent] = []

        error_message = chunk.error_message
        if error_message is not None:
            events.append(ErrorEvent(error=error_message))
            return events

        block = chunk.content_block
        if block is not None and block.type == "tool_use" and block.name:
            events.append(
                ToolCallEvent(
                    tool_name=block.name,
                    status=ToolCallStatus.RUNNING,
                    call_id=block.id,
                )
            )

        delta = chunk.delta
        if delta is None:
            return events
        if delta.text is not None:
            events.append(MessageEvent(content=delta.text, role=MessageRole.ASSISTANT))
        if delta.thinking:
            events.append(ThinkingEvent(reasoning=delta.thinking))
        if delta.partial_json is not None:
            events.extend(self._extractor.extract(delta.partial_json))
        return events
