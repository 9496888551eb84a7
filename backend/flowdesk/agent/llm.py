"""HTTP transport for the streaming messages API.

Retries transient failures (429 rate limit, 5xx server errors, timeouts,
connection errors) with exponential backoff. Does NOT retry mid-stream:
only opening the stream is retried. A non-retryable or final non-2xx
response is handed back to the caller, which turns it into an ErrorEvent.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

from flowdesk.agent.constants import (
    DIRECT_ACCESS_HEADER,
    HTTP_CONNECT_TIMEOUT_SECONDS,
    HTTP_TIMEOUT_SECONDS,
    LLM_MAX_RETRIES,
    LLM_RETRY_BASE_DELAY_SECONDS,
    LLM_RETRY_MAX_DELAY_SECONDS,
    LLM_RETRYABLE_STATUS_CODES,
    MESSAGES_PATH,
)
from flowdesk.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def create_client(
    config: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    config = config or default_settings
    return httpx.AsyncClient(
        base_url=config.ANTHROPIC_BASE_URL,
        headers={
            "x-api-key": config.ANTHROPIC_API_KEY,
            "anthropic-version": config.ANTHROPIC_API_VERSION,
            DIRECT_ACCESS_HEADER: "true",
            "content-type": "application/json",
        },
        timeout=httpx.Timeout(HTTP_TIMEOUT_SECONDS, connect=HTTP_CONNECT_TIMEOUT_SECONDS),
        transport=transport,
    )


def _is_retryable(exc: Exception) -> bool:
    """Determine if an exception is transient and worth retrying."""
    return isinstance(exc, (httpx.TimeoutException, httpx.ConnectError))


def _backoff(attempt: int, base_delay: float) -> float:
    return min(base_delay * (2 ** (attempt - 1)), LLM_RETRY_MAX_DELAY_SECONDS)


@asynccontextmanager
async def open_message_stream(
    client: httpx.AsyncClient,
    payload: dict,
    *,
    max_retries: int = LLM_MAX_RETRIES,
    retry_base_delay: float = LLM_RETRY_BASE_DELAY_SECONDS,
) -> AsyncIterator[httpx.Response]:
    """POST the payload and yield the streaming response, closing it on exit."""
    max_retries = max(1, max_retries)
    response: httpx.Response | None = None
    for attempt in range(1, max_retries + 1):
        request = client.build_request("POST", MESSAGES_PATH, json=payload)
        try:
            response = await client.send(request, stream=True)
        except Exception as exc:
            if attempt < max_retries and _is_retryable(exc):
                delay = _backoff(attempt, retry_base_delay)
                logger.warning(
                    "LLM stream creation attempt %d/%d failed (%s), retrying in %.1fs",
                    attempt,
                    max_retries,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
                continue
            raise

        if response.status_code in LLM_RETRYABLE_STATUS_CODES and attempt < max_retries:
            delay = _backoff(attempt, retry_base_delay)
            logger.warning(
                "LLM stream creation attempt %d/%d returned %d, retrying in %.1fs",
                attempt,
                max_retries,
                response.status_code,
                delay,
            )
            await response.aclose()
            await asyncio.sleep(delay)
            continue
        break

    try:
        yield response
    finally:
        await response.aclose()
