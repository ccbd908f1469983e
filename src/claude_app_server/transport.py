from __future__ import annotations

import asyncio
import contextlib
import hmac
import json
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any, TextIO
from urllib.parse import parse_qs, urlsplit

import websockets

from .errors import TransportError
from .models import ConnectionState
from .protocol import parse_line
from .server import AppServer

logger = logging.getLogger(__name__)

#: Application close code sent when a websocket client presents a wrong pair key.
PAIR_KEY_CLOSE_CODE = 4401

#: Maximum bytes per incoming NDJSON line on stdio.
MAX_LINE_BYTES = 16 * 1024 * 1024


def encode_message(payload: Mapping[str, Any]) -> str:
    return json.dumps(dict(payload), separators=(",", ":"))


class Outbox:
    """Ordered, best-effort outbound queue for one connection.

    ``send`` never blocks; ``run`` writes queued messages one at a time. After
    a write failure the connection is considered gone and later messages are
    dropped.
    """

    def __init__(self, write: Callable[[dict[str, Any]], Awaitable[None]]) -> None:
        self._write = write
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, payload: Mapping[str, Any]) -> None:
        if self._closed:
            return
        self._queue.put_nowait(dict(payload))

    def close(self) -> None:
        """Stop accepting messages; already queued ones are still written."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def run(self) -> None:
        while True:
            payload = await self._queue.get()
            if payload is None:
                return
            try:
                await self._write(payload)
            except TransportError as exc:
                logger.warning("dropping outbound messages: %s", exc)
                self._closed = True
                return


async def serve_lines(
    server: AppServer,
    lines: AsyncIterator[str | bytes],
    conn: ConnectionState,
) -> None:
    """Dispatch every well-formed message from ``lines`` on one connection."""
    async for line in lines:
        message = parse_line(line)
        if message is None:
            continue
        response = await server.handle_message(message, conn)
        if response is not None:
            conn.send(response)


async def serve_stdio(
    server: AppServer,
    *,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> None:
    """Serve one connection over NDJSON on stdin/stdout until stdin closes."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
    await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader),
        stdin if stdin is not None else sys.stdin,
    )
    out = stdout if stdout is not None else sys.stdout

    async def write(payload: dict[str, Any]) -> None:
        try:
            out.write(encode_message(payload) + "\n")
            out.flush()
        except Exception as exc:
            raise TransportError("failed writing to stdio transport") from exc

    outbox = Outbox(write)
    writer_task = asyncio.create_task(outbox.run())
    conn = ConnectionState(send=outbox.send)
    logger.info("listening on stdio")
    try:
        await serve_lines(server, reader, conn)
    finally:
        await server.shutdown()
        outbox.close()
        await writer_task


def pair_key_matches(path: str | None, pair_key: str) -> bool:
    """Return True when the request path carries ``?key=<pair_key>``."""
    query = urlsplit(path or "/").query
    values = parse_qs(query).get("key")
    if not values:
        return False
    return hmac.compare_digest(values[0].encode("utf-8"), pair_key.encode("utf-8"))


def create_websocket_handler(
    server: AppServer,
    pair_key: str,
) -> Callable[[Any], Awaitable[None]]:
    """Build a ``websockets`` connection handler gated by ``pair_key``."""

    async def handler(socket: Any) -> None:
        path = getattr(socket.request, "path", None)
        if not pair_key_matches(path, pair_key):
            logger.warning("rejected websocket connection: invalid pair key")
            await socket.close(PAIR_KEY_CLOSE_CODE, "Invalid pair key")
            return

        async def write(payload: dict[str, Any]) -> None:
            try:
                await socket.send(encode_message(payload))
            except Exception as exc:
                raise TransportError("failed writing to websocket transport") from exc

        outbox = Outbox(write)
        writer_task = asyncio.create_task(outbox.run())
        conn = ConnectionState(send=outbox.send)
        logger.info("websocket client connected: %s", socket.remote_address)
        try:
            await serve_lines(server, _frames(socket), conn)
        except websockets.ConnectionClosed:
            pass
        finally:
            outbox.close()
            writer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer_task
            logger.info("websocket client disconnected: %s", socket.remote_address)

    return handler


async def serve_websocket(
    server: AppServer,
    *,
    host: str,
    port: int,
    pair_key: str,
) -> None:
    """Serve websocket clients forever; one JSON message per text frame."""
    async with websockets.serve(
        create_websocket_handler(server, pair_key),
        host,
        port,
        compression=None,
    ) as ws_server:
        logger.info("listening on ws://%s:%d", host, port)
        try:
            await ws_server.serve_forever()
        finally:
            await server.shutdown()


async def _frames(socket: Any) -> AsyncIterator[str | bytes]:
    async for message in socket:
        yield message
