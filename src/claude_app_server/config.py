from __future__ import annotations

import os
import secrets
import shlex
import shutil
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from .errors import AppServerError

DEFAULT_PORT = 3284
DEFAULT_HOST = "0.0.0.0"
PAIR_KEY_LENGTH = 6
PAIR_KEY_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits


@dataclass(slots=True)
class ServerConfig:
    """Runtime configuration for the app server process.

    Attributes:
        agent_command: Agent executable argv prefix.
        transport: ``"stdio"`` or ``"ws"``.
        host: Websocket bind address.
        port: Websocket port.
        pair_key: Shared secret websocket clients pass as ``?key=``.
        show_banner: Print connection URLs when serving websockets.
        debug: Enable debug logging.
    """

    agent_command: list[str] = field(default_factory=list)
    transport: Literal["stdio", "ws"] = "stdio"
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    pair_key: str = ""
    show_banner: bool = False
    debug: bool = False


def generate_pair_key(length: int = PAIR_KEY_LENGTH) -> str:
    return "".join(secrets.choice(PAIR_KEY_ALPHABET) for _ in range(length))


def default_port() -> int:
    raw = os.getenv("CLAUDE_APP_SERVER_PORT")
    if not raw:
        return DEFAULT_PORT
    try:
        return int(raw)
    except ValueError as exc:
        raise AppServerError(f"invalid CLAUDE_APP_SERVER_PORT: {raw!r}") from exc


def default_host() -> str:
    return os.getenv("CLAUDE_APP_SERVER_HOST") or DEFAULT_HOST


def default_pair_key() -> str | None:
    return os.getenv("CLAUDE_APP_SERVER_PAIR_KEY") or None


def resolve_agent_command() -> list[str]:
    """Return the agent argv prefix.

    ``CLAUDE_APP_SERVER_CMD`` wins when set; otherwise ``claude`` is looked
    up on ``PATH`` and its symlinks are resolved.

    Raises:
        AppServerError: If no agent executable can be found.
    """
    from_env = os.getenv("CLAUDE_APP_SERVER_CMD")
    if from_env:
        return shlex.split(from_env)
    resolved = shutil.which("claude")
    if not resolved:
        raise AppServerError(
            "`claude` CLI not found.\n"
            "Install Claude Code: https://claude.ai/code\n"
            "Then log in: claude auth"
        )
    return [str(Path(resolved).resolve())]
