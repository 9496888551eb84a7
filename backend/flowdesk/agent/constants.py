"""Constants for the agent execution core.

Single source of truth for the wire protocol markers, retry policy and
UI timing used across the agent modules.
"""

# ---------------------------------------------------------------------------
# Messages API
# ---------------------------------------------------------------------------
MESSAGES_PATH = "v1/messages"
DIRECT_ACCESS_HEADER = "anthropic-dangerous-direct-browser-access"
HTTP_TIMEOUT_SECONDS = 120.0
HTTP_CONNECT_TIMEOUT_SECONDS = 10.0

# ---------------------------------------------------------------------------
# Stream framing
# ---------------------------------------------------------------------------
SSE_DATA_PREFIX = "data: "
SSE_DONE_TOKEN = "[DONE]"
MESSAGE_STOP_TYPE = "message_stop"

# ---------------------------------------------------------------------------
# LLM retry (stream creation only, never mid-stream)
# ---------------------------------------------------------------------------
LLM_MAX_RETRIES = 3
LLM_RETRY_BASE_DELAY_SECONDS = 1.0
LLM_RETRY_MAX_DELAY_SECONDS = 15.0
LLM_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
ERROR_BODY_MAX_CHARS = 2000

# ---------------------------------------------------------------------------
# Summaries carried by CompletedEvent
# ---------------------------------------------------------------------------
SUMMARY_COMPLETED = "Agent execution completed"
SUMMARY_CANCELLED = "cancelled"
SUMMARY_FAILED = "Agent execution failed"

# ---------------------------------------------------------------------------
# Chat state
# ---------------------------------------------------------------------------
CHAT_TITLE_MAX_CHARS = 50
PLAN_APPROVAL_MESSAGE = "Execute the approved plan"
