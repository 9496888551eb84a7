"""Decoder for the line-oriented ``data: <json>`` stream of the messages API.

Only ``data: `` lines carry payload. ``[DONE]`` (or a ``message_stop``
payload) ends the stream immediately. A payload that is not valid JSON, or
not shaped like a stream chunk, is logged and skipped: decode failures never
end the stream and never reach the caller.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

from pydantic import BaseModel, ValidationError

from flowdesk.agent.constants import MESSAGE_STOP_TYPE, SSE_DATA_PREFIX, SSE_DONE_TOKEN

logger = logging.getLogger(__name__)

STREAM_DONE = object()


class StreamDelta(BaseModel):
    type: str | None = None
    text: str | None = None
    partial_json: str | None = None
    thinking: str | None = None


class ContentBlock(BaseModel):
    type: str | None = None
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None


class StreamChunk(BaseModel):
    type: str | None = None
    index: int | None = None
    delta: StreamDelta | None = None
    content_block: ContentBlock | None = None
    error: dict[str, Any] | None = None

    @property
    def error_message(self) -> str | None:
        if self.type != "error":
            return None
        if self.error:
            return str(self.error.get("message") or self.error)
        return "Stream error"


def decode_line(line: str) -> StreamChunk | object | None:
    """Decode one line.

    Returns a StreamChunk, STREAM_DONE at the terminator, or None for lines
    that carry nothing (blank lines, ``event:`` lines, malformed payloads).
    """
    if not line or not line.startswith(SSE_DATA_PREFIX):
        return None

    data = line[len(SSE_DATA_PREFIX):].strip()
    if data == SSE_DONE_TOKEN:
        return STREAM_DONE

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse stream chunk (%s): %.200s", e, data)
        return None

    try:
        chunk = StreamChunk.model_validate(payload)
    except ValidationError as e:
        logger.warning("Unexpected stream chunk shape (%d errors): %.200s", e.error_count(), data)
        return None

    if chunk.type == MESSAGE_STOP_TYPE:
        return STREAM_DONE
    return chunk


async def iter_chunks(lines: AsyncIterable[str]) -> AsyncIterator[StreamChunk]:
    """Yield decoded chunks in arrival order, stopping at the terminator."""
    async for line in lines:
        decoded = decode_line(line)
        if decoded is None:
            continue
        if decoded is STREAM_DONE:
            return
        yield decoded
