#!/usr/bin/env python3
"""Drive claude-app-server over stdio and stream one or more turns.

This example demonstrates:
- initialize handshake
- one thread reused across several turns
- printing text deltas as they arrive
- command override for launching the server
"""

from __future__ import annotations

import argparse
import asyncio
import itertools
import json
import shlex
import sys
from typing import Any

DEFAULT_PROMPTS = [
    "List the files in this directory.",
    "Summarize what you found in two sentences.",
]


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the stdio example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--prompt",
        action="append",
        dest="prompts",
        help="Prompt to send. Can be provided multiple times.",
    )
    parser.add_argument("--cwd", help="Working directory for the thread.")
    parser.add_argument(
        "--cmd",
        help="Command used to launch the server, e.g. 'claude-app-server --debug'.",
    )
    return parser.parse_args()


class StdioSession:
    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self._ids = itertools.count(1)

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        request_id = next(self._ids)
        await self._write({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})
        while True:
            message = await self.read()
            if message.get("id") != request_id:
                continue
            if "error" in message:
                raise RuntimeError(f"{method} failed: {message['error']['message']}")
            return message["result"]

    async def read(self) -> dict[str, Any]:
        assert self._proc.stdout is not None
        line = await self._proc.stdout.readline()
        if not line:
            raise RuntimeError("server closed stdout")
        return json.loads(line)

    async def _write(self, payload: dict[str, Any]) -> None:
        assert self._proc.stdin is not None
        self._proc.stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
        await self._proc.stdin.drain()


async def run_turn(session: StdioSession, thread_id: str, prompt: str) -> None:
    started = await session.request("turn/start", {"thread_id": thread_id, "content": prompt})
    turn_id = started["turn_id"]
    while True:
        message = await session.read()
        params = message.get("params") or {}
        if params.get("turn_id") != turn_id:
            continue
        method = message.get("method")
        if method == "item/progress" and params["delta"]["type"] == "text":
            print(params["delta"]["text"], end="", flush=True)
        elif method == "item/created" and params["item"]["item"]["type"] == "tool_call":
            print(f"\n[tool] {params['item']['item']['name']}", flush=True)
        elif method == "turn/completed":
            print(f"\n[turn {params['status']}: {params['items_count']} items]")
            return
        elif method == "turn/error":
            print(f"\n[turn error] {params['error']}", file=sys.stderr)
            return


async def main() -> None:
    args = parse_args()
    prompts = args.prompts or DEFAULT_PROMPTS
    command = shlex.split(args.cmd) if args.cmd else [sys.executable, "-m", "claude_app_server"]

    proc = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
    )
    session = StdioSession(proc)
    try:
        info = await session.request("initialize", {"client": {"name": "stdio-example", "version": "1.0"}})
        print(f"connected to {info['server']['name']} {info['server']['version']}")

        params = {"cwd": args.cwd} if args.cwd else {}
        thread = await session.request("thread/start", params)
        for prompt in prompts:
            print(f"\n> {prompt}")
            await run_turn(session, thread["thread_id"], prompt)
    finally:
        assert proc.stdin is not None
        proc.stdin.close()
        await proc.wait()


if __name__ == "__main__":
    asyncio.run(main())
