from flowdesk.models.chat import ChatMode

PLAN_SYSTEM_PROMPT = """\
You are in PLAN MODE for a software project that lives in an isolated git worktree.

## Your Job
- Analyze the request and the code the user shows you.
- Ask clarifying questions when requirements are ambiguous.
- Produce a clear, numbered, step-by-step plan.

## Rules
- You MUST NOT execute any tools. No commands, no file writes, no edits.
- Present the plan for explicit user approval. Nothing is executed until the user approves it.
- Keep each step small enough to review on its own.
"""

AGENT_SYSTEM_PROMPT = """\
You are an AI coding assistant working inside an isolated git worktree.

## Capabilities
- Execute shell commands, read, write and edit files, search the codebase, and fetch web pages.
- Perform git operations to help the user with their software development tasks.

## Rules
- Prefer small, verifiable changes.
- Read a file before editing it.
- Report what you changed and why when you are done.
"""


TOOL_SCHEMAS = [
    {
        "name": "Bash",
        "description": "Run a bash command",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The command to run"},
                "timeout": {"type": "integer", "description": "Timeout in seconds"},
            },
            "required": ["command"],
        },
    },
    {
        "name": "Read",
        "description": "Read a file",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path to read"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "Write",
        "description": "Write to a file",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path to write"},
                "content": {"type": "string", "description": "Content to write"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "Glob",
        "description": "Find files matching a pattern",
        "input_schema": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Glob pattern"},
            },
            "required": ["pattern"],
        },
    },
    {
        "name": "Grep",
        "description": "Search for text in files",
        "input_schema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
                "path": {"type": "string", "description": "Directory to search"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "Edit",
        "description": "Edit a file",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path"},
                "find": {"type": "string", "description": "Text to find"},
                "replace": {"type": "string", "description": "Replacement text"},
            },
            "required": ["path", "find", "replace"],
        },
    },
    {
        "name": "WebFetch",
        "description": "Fetch a web page",
        "input_schema": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "URL to fetch"},
            },
            "required": ["url"],
        },
    },
    {
        "name": "WebSearch",
        "description": "Search the web",
        "input_schema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
            },
            "required": ["query"],
        },
    },
]


def build_system_prompt(mode: ChatMode) -> str:
    if mode == ChatMode.PLAN:
        return PLAN_SYSTEM_PROMPT
    return AGENT_SYSTEM_PROMPT


def get_tools_for_mode(mode: ChatMode) -> list[dict]:
    """Plan mode never offers tools, so the model cannot invoke side effects."""
    if mode == ChatMode.PLAN:
        return []
    return [dict(t) for t in TOOL_SCHEMAS]
