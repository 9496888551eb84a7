"""Best-effort tool activity extraction from streamed partial JSON.

Fragments arrive token by token and are rarely well-formed on their own, so
this works on substring markers and regexes instead of a JSON parser. A
missed tool call (a field split across fragments) is "no new information",
never an error: ``extract`` returns an empty list and never raises.
"""

from __future__ import annotations

import json
import logging
import re

from flowdesk.agent.events import ToolCallEvent, ToolCallStatus

logger = logging.getLogger(__name__)

RESULT_TOOL_NAME = "result"

_TOOL_USE_RE = re.compile(r'"type"\s*:\s*"tool_use"')
_TOOL_RESULT_RE = re.compile(r'"type"\s*:\s*"tool_result"')
_NAME_RE = re.compile(r'"name"\s*:\s*"([^"]+)"')
_ID_RE = re.compile(r'"id"\s*:\s*"([^"]+)"')
_TOOL_USE_ID_RE = re.compile(r'"tool_use_id"\s*:\s*"([^"]+)"')
_INPUT_RE = re.compile(r'"input"\s*:\s*(\{[^{}]*\})')
_CONTENT_RE = re.compile(r'"content"\s*:\s*"((?:[^"\\]|\\.)*)"')
_IS_ERROR_RE = re.compile(r'"is_error"\s*:\s*true')


def _unescape(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"')
    except ValueError:
        return raw


class ToolCallExtractor:
    def extract(self, fragment: str | None) -> list[ToolCallEvent]:
        if not fragment:
            return []
        try:
            return self._extract(fragment)
        except Exception:
            logger.warning("Tool call extraction failed for fragment: %.200s", fragment, exc_info=True)
            return []

    def _extract(self, fragment: str) -> list[ToolCallEvent]:
        if _TOOL_USE_RE.search(fragment):
            name = _NAME_RE.search(fragment)
            if name is None:
                return []
            input_match = _INPUT_RE.search(fragment)
            call_id = _ID_RE.search(fragment)
            return [
                ToolCallEvent(
                    tool_name=name.group(1),
                    status=ToolCallStatus.RUNNING,
                    input=input_match.group(1) if input_match else None,
                    call_id=call_id.group(1) if call_id else None,
                )
            ]

        if _TOOL_RESULT_RE.search(fragment):
            content = _CONTENT_RE.search(fragment)
            call_id = _TOOL_USE_ID_RE.search(fragment)
            status = ToolCallStatus.ERROR if _IS_ERROR_RE.search(fragment) else ToolCallStatus.COMPLETED
            return [
                ToolCallEvent(
                    tool_name=RESULT_TOOL_NAME,
                    status=status,
                    output=_unescape(content.group(1)) if content else None,
                    call_id=call_id.group(1) if call_id else None,
                )
            ]

        return []


def extract(fragment: str | None) -> list[ToolCallEvent]:
    return ToolCallExtractor().extract(fragment)
