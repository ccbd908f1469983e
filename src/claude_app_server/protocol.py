from __future__ import annotations

import json
from enum import IntEnum
from typing import Any

# JSON-RPC protocol version used by all envelopes.
JSONRPC_VERSION = "2.0"

# Request methods served by the app server.
INITIALIZE_METHOD = "initialize"
THREAD_START_METHOD = "thread/start"
THREAD_RESUME_METHOD = "thread/resume"
THREAD_FORK_METHOD = "thread/fork"
TURN_START_METHOD = "turn/start"
TURN_STEER_METHOD = "turn/steer"
TURN_INTERRUPT_METHOD = "turn/interrupt"
APPROVAL_RESPOND_METHOD = "approval/respond"
MODEL_LIST_METHOD = "model/list"
SKILLS_LIST_METHOD = "skills/list"
APP_LIST_METHOD = "app/list"

# Notifications pushed to the client.
INITIALIZED_NOTIFICATION = "initialized"
TURN_STARTED_NOTIFICATION = "turn/started"
ITEM_PROGRESS_NOTIFICATION = "item/progress"
ITEM_CREATED_NOTIFICATION = "item/created"
PERMISSION_DENIED_NOTIFICATION = "turn/permission_denied"
TURN_COMPLETED_NOTIFICATION = "turn/completed"
TURN_ERROR_NOTIFICATION = "turn/error"

RequestId = str | int | float | None


class ErrorCode(IntEnum):
    """JSON-RPC error codes, standard and server-defined."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    NOT_INITIALIZED = -32000
    THREAD_NOT_FOUND = -32001
    TURN_BUSY = -32003
    NO_ACTIVE_TURN = -32004


def make_response(request_id: RequestId, result: Any) -> dict[str, Any]:
    """Build a JSON-RPC success response envelope."""
    return {"jsonrpc": JSONRPC_VERSION, "result": result, "id": request_id}


def make_error_response(
    request_id: RequestId,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    """Build a JSON-RPC error response envelope."""
    error: dict[str, Any] = {"code": int(code), "message": message}
    if data is not None:
        error["data"] = data
    return {
        "jsonrpc": JSONRPC_VERSION,
        "error": error,
        "id": request_id,
    }


def make_notification(method: str, params: Any = None) -> dict[str, Any]:
    """Build a JSON-RPC notification envelope."""
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def is_request(message: dict[str, Any]) -> bool:
    """Return True when message carries a correlation id (even a null one)."""
    return "id" in message


def parse_line(line: str | bytes) -> dict[str, Any] | None:
    """Parse one NDJSON line into an incoming request or notification.

    Returns None for blank lines, invalid JSON, and anything that is not a
    well-formed JSON-RPC 2.0 request/notification. Never raises.
    """
    if isinstance(line, (bytes, bytearray)):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError:
            return None
    text = line.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    if payload.get("jsonrpc") != JSONRPC_VERSION:
        return None
    if not isinstance(payload.get("method"), str):
        return None
    if "id" in payload:
        request_id = payload["id"]
        if isinstance(request_id, bool) or not isinstance(
            request_id, (str, int, float, type(None))
        ):
            return None
    return payload
