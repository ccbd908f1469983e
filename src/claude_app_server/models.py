from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

#: Permission mode forwarded to the agent's ``--permission-mode`` flag.
#:
#: Values:
#: - ``"default"``: prompt for dangerous operations.
#: - ``"acceptEdits"``: auto-approve file edits, still guard shell commands.
#: - ``"bypassPermissions"``: approve everything (sandboxes only).
#: - ``"dontAsk"``: skip prompts without approving.
#: - ``"plan"``: plan only, no edits.
PermissionMode: TypeAlias = Literal[
    "default", "acceptEdits", "bypassPermissions", "dontAsk", "plan"
]

DEFAULT_PERMISSION_MODE: PermissionMode = "default"
APPROVED_PERMISSION_MODE: PermissionMode = "acceptEdits"

TurnStatus: TypeAlias = Literal["active", "completed", "interrupted", "error"]


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


# -- Items -------------------------------------------------------------------


class TextItem(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ThinkingItem(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str


class ToolCallItem(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    tool_use_id: str
    name: str
    input: Any = None


class ToolResultItem(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


class FileChangeItem(BaseModel):
    type: Literal["file_change"] = "file_change"
    path: str
    operation: Literal["create", "update", "delete"]


class CommandOutputItem(BaseModel):
    type: Literal["command_output"] = "command_output"
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


Item = Annotated[
    TextItem
    | ThinkingItem
    | ToolCallItem
    | ToolResultItem
    | FileChangeItem
    | CommandOutputItem,
    Field(discriminator="type"),
]


class StoredItem(BaseModel):
    """One persisted unit of turn output.

    Attributes:
        id: Item identifier, independent of the owning turn.
        created_at: Creation time in epoch milliseconds.
        item: The typed payload.
    """

    id: str = Field(default_factory=new_id)
    created_at: int = Field(default_factory=now_ms)
    item: Item


# -- Threads and turns -------------------------------------------------------


@dataclass(slots=True, eq=False)
class Turn:
    """One user-input-to-completion cycle within a thread.

    ``process`` and ``cancelled`` are live only while the turn is active and
    are never serialized.
    """

    thread_id: str
    user_content: str
    id: str = field(default_factory=new_id)
    status: TurnStatus = "active"
    steer_queue: list[str] = field(default_factory=list)
    items: list[StoredItem] = field(default_factory=list)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    process: asyncio.subprocess.Process | None = None
    created_at: int = field(default_factory=now_ms)
    completed_at: int | None = None
    error: str | None = None
    _terminate_sent: bool = field(default=False, init=False, repr=False)

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()

    def interrupt(self) -> None:
        """Fire the cancellation signal and ask the agent process to stop."""
        self.cancelled.set()
        self.terminate_process()

    def terminate_process(self) -> None:
        """Send SIGTERM to the live process, at most once."""
        proc = self.process
        if proc is None or self._terminate_sent or proc.returncode is not None:
            return
        self._terminate_sent = True
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()

    def snapshot(self) -> TurnSnapshot:
        return TurnSnapshot(
            id=self.id,
            thread_id=self.thread_id,
            status=self.status,
            user_content=self.user_content,
            items=list(self.items),
            created_at=self.created_at,
            completed_at=self.completed_at,
            error=self.error,
        )


@dataclass(slots=True, eq=False)
class Thread:
    """A conversation with its own working directory and turn history.

    Attributes:
        cli_session_id: Agent session id captured from the event stream, used
            to resume on later turns.
        fork_from: Agent session id this thread forks from on its first turn.
    """

    cwd: str
    permission_mode: PermissionMode = DEFAULT_PERMISSION_MODE
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)
    turns: list[Turn] = field(default_factory=list)
    active_turn_id: str | None = None
    cli_session_id: str | None = None
    fork_from: str | None = None

    def find_turn(self, turn_id: str) -> Turn | None:
        for turn in self.turns:
            if turn.id == turn_id:
                return turn
        return None

    def snapshot(self) -> ThreadSnapshot:
        return ThreadSnapshot(
            thread_id=self.id,
            created_at=self.created_at,
            cwd=self.cwd,
            permission_mode=self.permission_mode,
            cli_session_id=self.cli_session_id,
            turns=[turn.snapshot() for turn in self.turns],
        )


class TurnSnapshot(BaseModel):
    """Serialized turn as returned by ``thread/resume``."""

    id: str
    thread_id: str
    status: TurnStatus
    user_content: str
    items: list[StoredItem] = Field(default_factory=list)
    created_at: int
    completed_at: int | None = None
    error: str | None = None


class ThreadSnapshot(BaseModel):
    """Serialized thread state as returned by ``thread/resume``."""

    thread_id: str
    created_at: int
    cwd: str
    permission_mode: PermissionMode
    cli_session_id: str | None = None
    turns: list[TurnSnapshot] = Field(default_factory=list)


# -- Connections -------------------------------------------------------------


class ClientInfo(BaseModel):
    name: str = "unknown"
    version: str = "0.0.0"


@dataclass(slots=True)
class ConnectionState:
    """Per-connection flags plus the outbound send capability.

    ``send`` must not block: it enqueues one message for in-order, best-effort
    delivery to this connection.
    """

    send: Callable[[dict[str, Any]], None]
    initialized: bool = False
    client_info: ClientInfo | None = None


# -- Method params -----------------------------------------------------------


class _Params(BaseModel):
    model_config = ConfigDict(extra="ignore")


class InitializeParams(_Params):
    client: ClientInfo = Field(default_factory=ClientInfo)


class ThreadStartParams(_Params):
    cwd: str | None = None
    permission_mode: PermissionMode | None = None


class ThreadParams(_Params):
    thread_id: str


class TurnStartParams(_Params):
    thread_id: str
    content: str
    model: str | None = None


class TurnSteerParams(_Params):
    thread_id: str
    content: str


class ApprovalRespondParams(_Params):
    thread_id: str
    approved: bool
    permission_mode: PermissionMode | None = None
