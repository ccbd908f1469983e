from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import signal
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

from .errors import TurnExecutionError
from .events import (
    AssistantEvent,
    ResultEvent,
    SystemEvent,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserEvent,
    parse_event,
)
from .models import (
    ConnectionState,
    Item,
    StoredItem,
    TextItem,
    ThinkingItem,
    Thread,
    ToolCallItem,
    ToolResultItem,
    Turn,
    TurnStatus,
)
from .protocol import (
    ITEM_CREATED_NOTIFICATION,
    ITEM_PROGRESS_NOTIFICATION,
    PERMISSION_DENIED_NOTIFICATION,
    TURN_COMPLETED_NOTIFICATION,
    make_notification,
)
from .store import ThreadStore

logger = logging.getLogger(__name__)

#: Exit codes treated as a normal end of turn (130 is the shell's SIGINT code).
BENIGN_EXIT_CODES = frozenset({0, 130, -signal.SIGINT})

#: Characters of captured stderr included in failure messages.
STDERR_PREVIEW_CHARS = 500

#: Maximum bytes per stream-json line read from the agent (tool results can be large).
MAX_LINE_BYTES = 16 * 1024 * 1024

#: Env vars removed from the agent environment so a nested agent will start.
STRIPPED_ENV_KEYS = frozenset({"CLAUDECODE"})


def build_agent_args(thread: Thread, model: str | None = None) -> list[str]:
    """Return the agent argv (without the executable) for the thread's next turn.

    Session flags follow a fixed precedence: a forked thread that has not yet
    captured its own session forks from the origin; a thread with no session
    starts one keyed by its own id; otherwise the captured session resumes.
    """
    args = [
        "--print",
        "--output-format",
        "stream-json",
        "--verbose",
        "--include-partial-messages",
        "--permission-mode",
        thread.permission_mode,
    ]
    if model:
        args.extend(["--model", model])

    if thread.fork_from and not thread.cli_session_id:
        args.extend(["--resume", thread.fork_from, "--fork-session"])
    elif not thread.cli_session_id:
        args.extend(["--session-id", thread.id])
    else:
        args.extend(["--resume", thread.cli_session_id])
    return args


class _DeltaTracker:
    """Remembers the longest prefix already streamed per key."""

    def __init__(self) -> None:
        self._emitted: dict[tuple[str, str, int], str] = {}

    def advance(self, key: tuple[str, str, int], text: str) -> str:
        previous = self._emitted.get(key, "")
        if len(text) <= len(previous):
            return ""
        self._emitted[key] = text
        return text[len(previous):]

    def clear(self, key: tuple[str, str, int]) -> None:
        self._emitted.pop(key, None)


class TurnTranslator:
    """Applies stream events for one turn to the store and the client.

    Notifications are sent synchronously in the order events are applied,
    and items are appended in the same order, so replaying ``item/created``
    notifications reproduces ``turn.items``.
    """

    def __init__(self, thread: Thread, turn: Turn, conn: ConnectionState) -> None:
        self._thread = thread
        self._turn = turn
        self._conn = conn
        self._deltas = _DeltaTracker()

    def apply(self, event: SystemEvent | AssistantEvent | UserEvent | ResultEvent) -> None:
        if isinstance(event, SystemEvent):
            if event.subtype == "init" and event.session_id:
                self._thread.cli_session_id = event.session_id
        elif isinstance(event, ResultEvent):
            self._apply_result(event)
        elif self._turn.is_cancelled:
            # Nothing more reaches the client once the turn was interrupted.
            return
        elif isinstance(event, AssistantEvent):
            self._apply_assistant(event)
        elif isinstance(event, UserEvent):
            self._apply_user(event)

    def _apply_assistant(self, event: AssistantEvent) -> None:
        message_id = event.message.id or "unknown"
        partial = event.is_partial
        ordinals: dict[str, int] = {}

        for block in event.message.blocks():
            ordinal = ordinals.get(block.type, 0)
            ordinals[block.type] = ordinal + 1

            if isinstance(block, TextBlock):
                key = ("text", message_id, ordinal)
                self._progress(key, message_id, {"type": "text"}, "text", block.text)
                if not partial:
                    self._persist(TextItem(text=block.text))
                    self._deltas.clear(key)

            elif isinstance(block, ThinkingBlock) and not partial:
                key = ("thinking", message_id, ordinal)
                self._progress(
                    key, message_id, {"type": "thinking"}, "thinking", block.thinking
                )
                self._persist(ThinkingItem(thinking=block.thinking))
                self._deltas.clear(key)

            elif isinstance(block, ToolUseBlock) and not partial:
                self._persist(
                    ToolCallItem(tool_use_id=block.id, name=block.name, input=block.input)
                )

    def _apply_user(self, event: UserEvent) -> None:
        for block in event.message.blocks():
            if isinstance(block, ToolResultBlock):
                self._persist(
                    ToolResultItem(
                        tool_use_id=block.tool_use_id,
                        content=block.text,
                        is_error=block.is_error,
                    )
                )

    def _apply_result(self, event: ResultEvent) -> None:
        if event.session_id:
            self._thread.cli_session_id = event.session_id
        if self._turn.is_cancelled:
            return
        if event.is_failure:
            self._turn.error = event.error_text
        if event.permission_denials:
            self._conn.send(
                make_notification(
                    PERMISSION_DENIED_NOTIFICATION,
                    {
                        "turn_id": self._turn.id,
                        "thread_id": self._thread.id,
                        "denials": event.permission_denials,
                    },
                )
            )

    def _progress(
        self,
        key: tuple[str, str, int],
        message_id: str,
        delta: dict[str, Any],
        field_name: str,
        text: str,
    ) -> None:
        chunk = self._deltas.advance(key, text)
        if not chunk:
            return
        self._conn.send(
            make_notification(
                ITEM_PROGRESS_NOTIFICATION,
                {
                    "turn_id": self._turn.id,
                    "thread_id": self._thread.id,
                    "message_id": message_id,
                    "delta": {**delta, field_name: chunk},
                },
            )
        )

    def _persist(self, item: Item) -> StoredItem:
        stored = StoredItem(item=item)
        self._turn.items.append(stored)
        self._conn.send(
            make_notification(
                ITEM_CREATED_NOTIFICATION,
                {
                    "turn_id": self._turn.id,
                    "thread_id": self._thread.id,
                    "item": stored.model_dump(mode="json"),
                },
            )
        )
        return stored


class TurnRunner:
    """Runs one agent process per turn and relays its event stream."""

    def __init__(
        self,
        store: ThreadStore,
        command: Sequence[str] = ("claude",),
        *,
        env: Mapping[str, str] | None = None,
        max_line_bytes: int = MAX_LINE_BYTES,
    ) -> None:
        """Configure the runner.

        Args:
            store: Store that owns the threads this runner executes.
            command: Agent executable argv prefix; turn args are appended.
            env: Optional environment overrides for the agent process.
            max_line_bytes: Longest stdout line parsed; longer lines are skipped.
        """
        if not command:
            raise ValueError("agent command must not be empty")
        self._store = store
        self._command = list(command)
        self._env = dict(env) if env is not None else {}
        self._max_line_bytes = max_line_bytes

    async def run(
        self,
        thread: Thread,
        turn: Turn,
        conn: ConnectionState,
        model: str | None = None,
    ) -> None:
        """Execute ``turn`` to completion and emit its terminal notification.

        Raises:
            TurnExecutionError: If the agent cannot be launched or exits with
                a non-benign code while the turn was not interrupted.
        """
        if turn.is_cancelled:
            self.complete(thread, turn, conn, "interrupted")
            return

        argv = [*self._command, *build_agent_args(thread, model)]
        logger.debug("spawn: %s", shlex.join(argv))
        logger.debug("cwd: %s", thread.cwd)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=thread.cwd,
                env=self._child_env(),
                limit=self._max_line_bytes,
            )
        except OSError as exc:
            if turn.is_cancelled:
                self.complete(thread, turn, conn, "interrupted")
                return
            raise TurnExecutionError(f"Failed to spawn agent: {exc}") from exc

        turn.process = proc
        if turn.is_cancelled:
            turn.terminate_process()

        # Watch exit and drain stderr before touching stdout so an early exit
        # is never missed.
        exit_task = asyncio.create_task(proc.wait())
        stderr_task = asyncio.create_task(_collect_stderr(proc.stderr))
        try:
            await _write_input(proc, turn.user_content)

            if proc.stdout is None:
                raise TurnExecutionError("agent stdout is not available")
            translator = TurnTranslator(thread, turn, conn)
            async for raw in _iter_lines(proc.stdout):
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                logger.debug("stdout: %s", line)
                event = parse_event(line)
                if event is not None:
                    translator.apply(event)

            exit_code = await exit_task
            stderr_text = await stderr_task
        except BaseException:
            turn.terminate_process()
            exit_task.cancel()
            stderr_task.cancel()
            raise
        finally:
            turn.process = None

        logger.debug("exit code: %s", exit_code)
        if not turn.is_cancelled and exit_code not in BENIGN_EXIT_CODES:
            raise TurnExecutionError(
                _with_stderr(f"agent exited with code {exit_code}", stderr_text)
            )

        self.complete(thread, turn, conn, "interrupted" if turn.is_cancelled else "completed")

    def complete(
        self,
        thread: Thread,
        turn: Turn,
        conn: ConnectionState,
        status: TurnStatus,
    ) -> None:
        """Finish ``turn`` and send ``turn/completed`` with its final status."""
        self._store.finish_turn(thread, turn, status)
        params: dict[str, Any] = {
            "turn_id": turn.id,
            "thread_id": thread.id,
            "status": turn.status,
            "items_count": len(turn.items),
            "completed_at": turn.completed_at,
        }
        if turn.error:
            params["error"] = turn.error
        conn.send(make_notification(TURN_COMPLETED_NOTIFICATION, params))

    def _child_env(self) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if k not in STRIPPED_ENV_KEYS}
        env.update(self._env)
        return env


async def _iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield newline-terminated lines, dropping any line over the stream limit."""
    skipping = False
    while True:
        try:
            raw = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            if exc.partial and not skipping:
                yield exc.partial
            return
        except asyncio.LimitOverrunError as exc:
            if not skipping:
                logger.debug("skipping agent output line over the line limit")
            skipping = True
            # The overrun bytes stay buffered; drop them and keep scanning.
            await stream.readexactly(exc.consumed)
            continue
        if skipping:
            skipping = False
            continue
        yield raw


async def _write_input(proc: asyncio.subprocess.Process, content: str) -> None:
    """Write the turn input to the agent and close its stdin."""
    if proc.stdin is None:
        return
    logger.debug("stdin: %r", content)
    with contextlib.suppress(BrokenPipeError, ConnectionResetError):
        proc.stdin.write(content.encode("utf-8"))
        await proc.stdin.drain()
    proc.stdin.close()


async def _collect_stderr(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    chunks: list[bytes] = []
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        chunks.append(chunk)
        logger.debug("stderr: %s", chunk.decode("utf-8", errors="replace").rstrip())
    return b"".join(chunks).decode("utf-8", errors="replace")


def _with_stderr(message: str, stderr_text: str) -> str:
    if not stderr_text:
        return message
    return f"{message}\nstderr: {stderr_text[:STDERR_PREVIEW_CHARS]}"
