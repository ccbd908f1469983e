from __future__ import annotations

from typing import Any

from .protocol import ErrorCode


class AppServerError(Exception):
    """Base exception for the claude-app-server package."""


class TransportError(AppServerError):
    """Raised when a client connection fails or disconnects unexpectedly."""


class TurnExecutionError(AppServerError):
    """Raised when the agent process cannot be launched or exits abnormally."""


class RpcError(AppServerError):
    """Raised by method handlers to produce a JSON-RPC error response."""

    def __init__(
        self,
        message: str,
        *,
        code: int = ErrorCode.INTERNAL_ERROR,
        data: Any = None,
    ) -> None:
        """Create a protocol error.

        Args:
            message: Human-readable description.
            code: JSON-RPC error code reported to the client.
            data: Optional structured error payload.
        """
        super().__init__(message)
        self.code = int(code)
        self.data = data
