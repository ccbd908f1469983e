from __future__ import annotations

import asyncio
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from claude_app_server.models import ConnectionState

FAKE_AGENT = [sys.executable, str(Path(__file__).with_name("fake_claude.py"))]


class Recorder:
    """Outbound send capability that keeps every payload."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    def send(self, payload: Mapping[str, Any]) -> None:
        self.sent.append(dict(payload))

    def notifications(self, method: str, *, turn_id: str | None = None) -> list[dict[str, Any]]:
        found = []
        for message in self.sent:
            if message.get("method") != method:
                continue
            params = message.get("params") or {}
            if turn_id is not None and params.get("turn_id") != turn_id:
                continue
            found.append(params)
        return found

    def index_of(self, method: str, *, turn_id: str | None = None) -> int:
        for idx, message in enumerate(self.sent):
            if message.get("method") != method:
                continue
            if turn_id is not None and (message.get("params") or {}).get("turn_id") != turn_id:
                continue
            return idx
        raise AssertionError(f"{method} was not sent")


def make_conn(*, initialized: bool = True) -> tuple[ConnectionState, Recorder]:
    recorder = Recorder()
    return ConnectionState(send=recorder.send, initialized=initialized), recorder


async def call(
    server: Any,
    conn: ConnectionState,
    method: str,
    params: Mapping[str, Any] | None = None,
    *,
    request_id: int = 1,
) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = dict(params)
    response = await server.handle_message(message, conn)
    assert response is not None
    return response


async def wait_for_notification(
    recorder: Recorder,
    method: str,
    *,
    turn_id: str | None = None,
    timeout: float = 10.0,
) -> dict[str, Any]:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        found = recorder.notifications(method, turn_id=turn_id)
        if found:
            return found[0]
        await asyncio.sleep(0.01)
    raise AssertionError(f"timed out waiting for {method}")


async def wait_for_terminal(recorder: Recorder, turn_id: str, *, timeout: float = 10.0) -> str:
    """Wait for turn/completed or turn/error and return the method seen."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        for method in ("turn/completed", "turn/error"):
            if recorder.notifications(method, turn_id=turn_id):
                return method
        await asyncio.sleep(0.01)
    raise AssertionError(f"timed out waiting for terminal notification of {turn_id}")
