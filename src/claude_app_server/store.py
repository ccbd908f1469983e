from __future__ import annotations

import logging

from .errors import RpcError
from .models import (
    DEFAULT_PERMISSION_MODE,
    PermissionMode,
    Thread,
    Turn,
    TurnStatus,
    now_ms,
)
from .protocol import ErrorCode

logger = logging.getLogger(__name__)

STEER_SEPARATOR = "\n\n"


class ThreadStore:
    """In-memory registry of threads and their turn history.

    Mutated only from the event loop thread, so check-and-set operations
    such as :meth:`begin_turn` are atomic without locking.
    """

    def __init__(self) -> None:
        self._threads: dict[str, Thread] = {}

    def __len__(self) -> int:
        return len(self._threads)

    def __contains__(self, thread_id: object) -> bool:
        return thread_id in self._threads

    def threads(self) -> list[Thread]:
        return list(self._threads.values())

    def create_thread(
        self,
        cwd: str,
        permission_mode: PermissionMode = DEFAULT_PERMISSION_MODE,
        *,
        fork_from: str | None = None,
    ) -> Thread:
        thread = Thread(cwd=cwd, permission_mode=permission_mode, fork_from=fork_from)
        self._threads[thread.id] = thread
        logger.debug("thread created: %s cwd=%s fork_from=%s", thread.id, cwd, fork_from)
        return thread

    def get(self, thread_id: str) -> Thread:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise RpcError(
                f"Thread not found: {thread_id}",
                code=ErrorCode.THREAD_NOT_FOUND,
            )
        return thread

    def active_turn(self, thread: Thread) -> Turn:
        """Return the thread's active turn or raise ``NO_ACTIVE_TURN``."""
        turn = thread.find_turn(thread.active_turn_id) if thread.active_turn_id else None
        if turn is None or turn.status != "active":
            raise RpcError("No active turn.", code=ErrorCode.NO_ACTIVE_TURN)
        return turn

    def begin_turn(self, thread: Thread, content: str) -> Turn:
        """Create the thread's next turn and mark it active.

        Text steered into the previous turn is prepended to ``content`` and
        removed from that turn's queue.
        """
        if thread.active_turn_id is not None:
            raise RpcError(
                "Thread already has an active turn. Interrupt it first.",
                code=ErrorCode.TURN_BUSY,
            )

        if thread.turns and thread.turns[-1].steer_queue:
            previous = thread.turns[-1]
            content = STEER_SEPARATOR.join(previous.steer_queue) + STEER_SEPARATOR + content
            previous.steer_queue.clear()

        turn = Turn(thread_id=thread.id, user_content=content)
        thread.turns.append(turn)
        thread.active_turn_id = turn.id
        return turn

    def finish_turn(
        self,
        thread: Thread,
        turn: Turn,
        status: TurnStatus,
        *,
        error: str | None = None,
    ) -> None:
        """Move an active turn into a terminal status.

        Terminal statuses are final: finishing a turn that is no longer
        active changes nothing. The thread's active pointer is only cleared
        when it still refers to ``turn``.
        """
        if turn.status != "active":
            logger.debug("turn %s already %s, ignoring %s", turn.id, turn.status, status)
            return
        turn.status = status
        if error is not None:
            turn.error = error
        if turn.completed_at is None:
            turn.completed_at = now_ms()
        if thread.active_turn_id == turn.id:
            thread.active_turn_id = None
