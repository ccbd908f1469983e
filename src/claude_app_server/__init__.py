from .errors import AppServerError, RpcError, TransportError, TurnExecutionError
from .models import (
    ConnectionState,
    PermissionMode,
    StoredItem,
    Thread,
    ThreadSnapshot,
    Turn,
    TurnSnapshot,
)
from .protocol import ErrorCode
from .runner import TurnRunner, TurnTranslator, build_agent_args
from .server import SERVER_NAME, SERVER_VERSION, AppServer
from .store import ThreadStore
from .transport import Outbox, serve_lines, serve_stdio, serve_websocket

__version__ = SERVER_VERSION

__all__ = [
    "AppServer",
    "AppServerError",
    "ConnectionState",
    "ErrorCode",
    "Outbox",
    "PermissionMode",
    "RpcError",
    "SERVER_NAME",
    "SERVER_VERSION",
    "StoredItem",
    "Thread",
    "ThreadSnapshot",
    "ThreadStore",
    "TransportError",
    "Turn",
    "TurnExecutionError",
    "TurnRunner",
    "TurnSnapshot",
    "TurnTranslator",
    "build_agent_args",
    "serve_lines",
    "serve_stdio",
    "serve_websocket",
]
