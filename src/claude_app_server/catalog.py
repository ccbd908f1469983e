"""Static discovery data returned by ``model/list`` and ``skills/list``.

Tools are executed by the agent itself; this catalog only describes them.
"""

from __future__ import annotations

from typing import Any

AVAILABLE_MODELS: tuple[dict[str, Any], ...] = (
    {"id": "claude-opus-4-6", "name": "Claude Opus 4.6", "aliases": ["opus"]},
    {"id": "claude-sonnet-4-6", "name": "Claude Sonnet 4.6", "aliases": ["sonnet"]},
    {"id": "claude-haiku-4-5", "name": "Claude Haiku 4.5", "aliases": ["haiku"]},
)


def _tool(
    name: str,
    description: str,
    properties: dict[str, tuple[str, str]],
    required: list[str],
) -> dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "parameters": {
            "type": "object",
            "properties": {
                key: {"type": kind, "description": text}
                for key, (kind, text) in properties.items()
            },
            "required": required,
        },
    }


BUILTIN_TOOLS: tuple[dict[str, Any], ...] = (
    _tool(
        "Read",
        "Read the contents of a file.",
        {"file_path": ("string", "Absolute path to the file to read")},
        ["file_path"],
    ),
    _tool(
        "Write",
        "Create a new file with specified content.",
        {
            "file_path": ("string", "Absolute path for the new file"),
            "content": ("string", "Content to write"),
        },
        ["file_path", "content"],
    ),
    _tool(
        "Edit",
        "Make targeted edits to an existing file.",
        {
            "file_path": ("string", "Path to the file to modify"),
            "old_string": ("string", "Exact text to replace"),
            "new_string": ("string", "Replacement text"),
        },
        ["file_path", "old_string", "new_string"],
    ),
    _tool(
        "Bash",
        "Execute a shell command in the working directory.",
        {
            "command": ("string", "Shell command to run"),
            "timeout": ("number", "Timeout in milliseconds"),
        },
        ["command"],
    ),
    _tool(
        "Glob",
        "Find files matching a glob pattern.",
        {
            "pattern": ("string", "Glob pattern, e.g. '**/*.py'"),
            "path": ("string", "Base directory (default: cwd)"),
        },
        ["pattern"],
    ),
    _tool(
        "Grep",
        "Search file contents using regex.",
        {
            "pattern": ("string", "Regex pattern to search for"),
            "path": ("string", "Directory or file to search"),
            "include": ("string", "File glob filter, e.g. '*.py'"),
        },
        ["pattern"],
    ),
    _tool(
        "WebFetch",
        "Fetch and analyze the contents of a URL.",
        {
            "url": ("string", "URL to fetch"),
            "prompt": ("string", "What to extract from the page"),
        },
        ["url", "prompt"],
    ),
    _tool(
        "WebSearch",
        "Search the web.",
        {"query": ("string", "Search query")},
        ["query"],
    ),
    _tool(
        "Task",
        "Spawn a sub-agent to handle a parallel task.",
        {
            "description": ("string", "Short description of the task"),
            "prompt": ("string", "Full prompt for the sub-agent"),
        },
        ["description", "prompt"],
    ),
)


def model_ids() -> list[str]:
    return [model["id"] for model in AVAILABLE_MODELS]


def tool_names() -> list[str]:
    return [tool["name"] for tool in BUILTIN_TOOLS]
