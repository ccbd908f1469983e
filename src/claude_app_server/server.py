"""JSON-RPC method dispatch for the app server.

Methods:
    Session:   initialize
    Threads:   thread/start  thread/resume  thread/fork
    Turns:     turn/start    turn/steer     turn/interrupt
    Approval:  approval/respond
    Discovery: model/list    skills/list    app/list
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .catalog import AVAILABLE_MODELS, BUILTIN_TOOLS, model_ids, tool_names
from .errors import RpcError
from .models import (
    APPROVED_PERMISSION_MODE,
    DEFAULT_PERMISSION_MODE,
    ApprovalRespondParams,
    ConnectionState,
    InitializeParams,
    Thread,
    ThreadParams,
    ThreadStartParams,
    Turn,
    TurnStartParams,
    TurnSteerParams,
)
from .protocol import (
    APP_LIST_METHOD,
    APPROVAL_RESPOND_METHOD,
    INITIALIZE_METHOD,
    INITIALIZED_NOTIFICATION,
    MODEL_LIST_METHOD,
    SKILLS_LIST_METHOD,
    THREAD_FORK_METHOD,
    THREAD_RESUME_METHOD,
    THREAD_START_METHOD,
    TURN_ERROR_NOTIFICATION,
    TURN_INTERRUPT_METHOD,
    TURN_START_METHOD,
    TURN_STARTED_NOTIFICATION,
    TURN_STEER_METHOD,
    ErrorCode,
    is_request,
    make_error_response,
    make_notification,
    make_response,
)
from .runner import TurnRunner
from .store import ThreadStore

logger = logging.getLogger(__name__)

SERVER_NAME = "claude-app-server"
SERVER_VERSION = "1.0.0"

_P = TypeVar("_P", bound=BaseModel)

Handler = Callable[[Any, ConnectionState], Any]


class AppServer:
    """Stateful JSON-RPC app server wrapping the agent CLI.

    One instance owns one :class:`ThreadStore`; several instances can live in
    the same process without sharing state.
    """

    def __init__(
        self,
        agent_command: Sequence[str] = ("claude",),
        *,
        agent_env: Mapping[str, str] | None = None,
        store: ThreadStore | None = None,
    ) -> None:
        """Create a server.

        Args:
            agent_command: Agent executable argv prefix used for every turn.
            agent_env: Optional environment overrides for agent processes.
            store: Optional pre-built store (a fresh one is created otherwise).
        """
        self._store = store if store is not None else ThreadStore()
        self._runner = TurnRunner(self._store, agent_command, env=agent_env)
        self._tasks: set[asyncio.Task[None]] = set()
        self._methods: dict[str, Handler] = {
            INITIALIZE_METHOD: self._initialize,
            THREAD_START_METHOD: self._thread_start,
            THREAD_RESUME_METHOD: self._thread_resume,
            THREAD_FORK_METHOD: self._thread_fork,
            TURN_START_METHOD: self._turn_start,
            TURN_STEER_METHOD: self._turn_steer,
            TURN_INTERRUPT_METHOD: self._turn_interrupt,
            APPROVAL_RESPOND_METHOD: self._approval_respond,
            MODEL_LIST_METHOD: lambda params, conn: {"models": list(AVAILABLE_MODELS)},
            SKILLS_LIST_METHOD: lambda params, conn: {"skills": list(BUILTIN_TOOLS)},
            APP_LIST_METHOD: lambda params, conn: {"apps": []},
        }

    @property
    def store(self) -> ThreadStore:
        return self._store

    @property
    def methods(self) -> list[str]:
        return list(self._methods)

    # -- Entry point ---------------------------------------------------------

    async def handle_message(
        self,
        message: Mapping[str, Any],
        conn: ConnectionState,
    ) -> dict[str, Any] | None:
        """Handle one incoming message and return its response, if any.

        Client notifications never produce a response.
        """
        if not is_request(message):
            return None

        request_id = message.get("id")
        method = message.get("method")
        params = message.get("params")
        logger.debug("request id=%r method=%s", request_id, method)
        try:
            if not conn.initialized and method != INITIALIZE_METHOD:
                raise RpcError(
                    "Not initialized. Send initialize first.",
                    code=ErrorCode.NOT_INITIALIZED,
                )
            result = self.dispatch(str(method), params, conn)
            return make_response(request_id, result)
        except RpcError as exc:
            return make_error_response(request_id, exc.code, str(exc), exc.data)
        except Exception as exc:
            logger.exception("unhandled error in %s", method)
            return make_error_response(request_id, ErrorCode.INTERNAL_ERROR, str(exc))

    def dispatch(self, method: str, params: Any, conn: ConnectionState) -> Any:
        handler = self._methods.get(method)
        if handler is None:
            raise RpcError(f"Unknown method: {method}", code=ErrorCode.METHOD_NOT_FOUND)
        return handler(params, conn)

    # -- Session -------------------------------------------------------------

    def _initialize(self, params: Any, conn: ConnectionState) -> dict[str, Any]:
        p = _parse_params(InitializeParams, params)
        conn.client_info = p.client
        conn.initialized = True
        logger.info("client initialized: %s %s", p.client.name, p.client.version)
        # Deferred so the response is written first.
        asyncio.get_running_loop().call_soon(
            conn.send, make_notification(INITIALIZED_NOTIFICATION, {"server": SERVER_NAME})
        )
        return {
            "server": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "capabilities": {
                "methods": self.methods,
                "threads": self._method_verbs("thread/"),
                "turns": self._method_verbs("turn/"),
                "models": model_ids(),
                "skills": tool_names(),
            },
        }

    def _method_verbs(self, prefix: str) -> list[str]:
        return [name[len(prefix):] for name in self._methods if name.startswith(prefix)]

    # -- Threads -------------------------------------------------------------

    def _thread_start(self, params: Any, conn: ConnectionState) -> dict[str, Any]:
        p = _parse_params(ThreadStartParams, params)
        cwd = expand_home(p.cwd if p.cwd is not None else os.getcwd())
        thread = self._store.create_thread(cwd, p.permission_mode or DEFAULT_PERMISSION_MODE)
        return {"thread_id": thread.id, "created_at": thread.created_at}

    def _thread_resume(self, params: Any, conn: ConnectionState) -> dict[str, Any]:
        p = _parse_params(ThreadParams, params)
        thread = self._store.get(p.thread_id)
        return thread.snapshot().model_dump(mode="json")

    def _thread_fork(self, params: Any, conn: ConnectionState) -> dict[str, Any]:
        p = _parse_params(ThreadParams, params)
        source = self._store.get(p.thread_id)
        if not source.cli_session_id:
            raise RpcError(
                "Cannot fork a thread that has no turns yet.",
                code=ErrorCode.INVALID_PARAMS,
            )
        forked = self._store.create_thread(
            source.cwd,
            source.permission_mode,
            fork_from=source.cli_session_id,
        )
        return {
            "thread_id": forked.id,
            "forked_from": source.id,
            "created_at": forked.created_at,
        }

    # -- Turns ---------------------------------------------------------------

    def _turn_start(self, params: Any, conn: ConnectionState) -> dict[str, Any]:
        p = _parse_params(TurnStartParams, params)
        thread = self._store.get(p.thread_id)
        turn = self._store.begin_turn(thread, p.content)
        asyncio.get_running_loop().call_soon(self._launch_turn, thread, turn, conn, p.model)
        return {"turn_id": turn.id}

    def _turn_steer(self, params: Any, conn: ConnectionState) -> dict[str, Any]:
        p = _parse_params(TurnSteerParams, params)
        thread = self._store.get(p.thread_id)
        turn = self._store.active_turn(thread)
        turn.steer_queue.append(p.content)
        return {
            "turn_id": turn.id,
            "note": "queued: will be prepended to the next user message",
        }

    def _turn_interrupt(self, params: Any, conn: ConnectionState) -> dict[str, Any]:
        p = _parse_params(ThreadParams, params)
        thread = self._store.get(p.thread_id)
        turn = self._store.active_turn(thread)
        turn.interrupt()
        self._store.finish_turn(thread, turn, "interrupted")
        logger.info("turn interrupted: %s", turn.id)
        return {"turn_id": turn.id, "status": turn.status}

    def _approval_respond(self, params: Any, conn: ConnectionState) -> dict[str, Any]:
        p = _parse_params(ApprovalRespondParams, params)
        thread = self._store.get(p.thread_id)
        if p.approved:
            thread.permission_mode = p.permission_mode or APPROVED_PERMISSION_MODE
            note = (
                f'Permission mode updated to "{thread.permission_mode}". '
                "Retry your turn/start."
            )
        else:
            note = "Approval denied. Permission mode unchanged."
        return {
            "thread_id": thread.id,
            "approved": p.approved,
            "permission_mode": thread.permission_mode,
            "note": note,
        }

    # -- Background turn execution ------------------------------------------

    def _launch_turn(
        self,
        thread: Thread,
        turn: Turn,
        conn: ConnectionState,
        model: str | None,
    ) -> None:
        conn.send(
            make_notification(
                TURN_STARTED_NOTIFICATION,
                {"turn_id": turn.id, "thread_id": thread.id},
            )
        )
        task = asyncio.create_task(self._run_turn(thread, turn, conn, model))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_turn(
        self,
        thread: Thread,
        turn: Turn,
        conn: ConnectionState,
        model: str | None,
    ) -> None:
        """Run a turn, funnelling every failure into ``turn/error``."""
        try:
            await self._runner.run(thread, turn, conn, model)
        except asyncio.CancelledError:
            if turn.status == "active":
                self._store.finish_turn(thread, turn, "interrupted")
            raise
        except Exception as exc:
            if turn.is_cancelled:
                logger.debug("turn %s failed after interrupt: %s", turn.id, exc)
                self._runner.complete(thread, turn, conn, "interrupted")
                return
            logger.warning("turn %s failed: %s", turn.id, exc)
            self._store.finish_turn(thread, turn, "error", error=str(exc))
            conn.send(
                make_notification(
                    TURN_ERROR_NOTIFICATION,
                    {"turn_id": turn.id, "thread_id": thread.id, "error": str(exc)},
                )
            )

    async def wait_for_turns(self) -> None:
        """Wait until every scheduled turn has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, *, timeout: float = 5.0) -> None:
        """Interrupt active turns and wait for their runners to finish."""
        for thread in self._store.threads():
            if thread.active_turn_id is None:
                continue
            turn = self._store.active_turn(thread)
            turn.interrupt()
            self._store.finish_turn(thread, turn, "interrupted")

        if not self._tasks:
            return
        _, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def expand_home(path: str) -> str:
    """Expand a leading ``~`` (alone or followed by ``/``) to the home directory."""
    if path == "~" or path.startswith("~/"):
        return str(Path.home()) + path[1:]
    return path


def _parse_params(model: type[_P], params: Any) -> _P:
    try:
        return model.model_validate(params if params is not None else {})
    except ValidationError as exc:
        raise RpcError(
            f"Invalid params: {exc.error_count()} validation error(s)",
            code=ErrorCode.INVALID_PARAMS,
            data=json.loads(exc.json(include_url=False)),
        ) from exc
