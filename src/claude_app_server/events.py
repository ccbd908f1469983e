"""Typed view of the agent's ``--output-format stream-json`` event stream.

Each stdout line carries one JSON object tagged by ``type``. Lines that are
not valid JSON, or do not match one of the known event kinds, are skipped
by :func:`parse_event` rather than failing the turn.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


# -- Content blocks ----------------------------------------------------------


class TextBlock(_Lenient):
    type: Literal["text"]
    text: str


class ThinkingBlock(_Lenient):
    type: Literal["thinking"]
    thinking: str


class ToolUseBlock(_Lenient):
    type: Literal["tool_use"]
    id: str
    name: str
    input: Any = None


class ToolResultBlock(_Lenient):
    type: Literal["tool_result"]
    tool_use_id: str
    content: Any = None
    is_error: bool = False

    @property
    def text(self) -> str:
        return normalize_tool_result_content(self.content)


ContentBlock: TypeAlias = Annotated[
    TextBlock | ThinkingBlock | ToolUseBlock | ToolResultBlock,
    Field(discriminator="type"),
]

_BLOCK_ADAPTER: TypeAdapter[Any] = TypeAdapter(ContentBlock)


class AgentMessage(_Lenient):
    """Message envelope carried by assistant/user events."""

    id: str | None = None
    role: str | None = None
    content: list[Any] = Field(default_factory=list)

    def blocks(self) -> list[TextBlock | ThinkingBlock | ToolUseBlock | ToolResultBlock]:
        """Return the recognised content blocks, in order, skipping others."""
        parsed = []
        for raw in self.content:
            try:
                parsed.append(_BLOCK_ADAPTER.validate_python(raw))
            except ValidationError:
                continue
        return parsed


# -- Events ------------------------------------------------------------------


class SystemEvent(_Lenient):
    type: Literal["system"]
    subtype: str = ""
    session_id: str | None = None
    cwd: str | None = None
    model: str | None = None
    tools: list[str] | None = None


class AssistantEvent(_Lenient):
    type: Literal["assistant"]
    message: AgentMessage
    is_partial: bool = False
    session_id: str | None = None


class UserEvent(_Lenient):
    type: Literal["user"]
    message: AgentMessage = Field(default_factory=AgentMessage)
    session_id: str | None = None


class ResultEvent(_Lenient):
    type: Literal["result"]
    subtype: str = ""
    session_id: str | None = None
    error: str | None = None
    result: Any = None
    is_error: bool = False
    permission_denials: list[Any] = Field(default_factory=list)

    @property
    def is_failure(self) -> bool:
        return self.subtype == "error" or self.subtype.startswith("error_")

    @property
    def error_text(self) -> str:
        if self.error:
            return self.error
        if isinstance(self.result, str) and self.result:
            return self.result
        return self.subtype or "unknown error"


StreamEvent: TypeAlias = Annotated[
    SystemEvent | AssistantEvent | UserEvent | ResultEvent,
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(StreamEvent)


def parse_event(
    line: str | bytes,
) -> SystemEvent | AssistantEvent | UserEvent | ResultEvent | None:
    """Parse one stdout line, returning None when it should be skipped."""
    if isinstance(line, (bytes, bytearray)):
        line = line.decode("utf-8", errors="replace")
    text = line.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("skipping non-JSON agent output: %.200s", text)
        return None
    try:
        return _EVENT_ADAPTER.validate_python(payload)
    except ValidationError:
        return None


def normalize_tool_result_content(content: Any) -> str:
    """Flatten tool-result content (string or list of text parts) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                text = part.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return json.dumps(content, default=str)
