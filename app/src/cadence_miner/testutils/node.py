"""Minimal websocket JSON-RPC node for exercising the real channel."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
import websockets.asyncio.server
from websockets.exceptions import ConnectionClosed

logger = structlog.get_logger(__name__)

Handler = Callable[[list[Any]], Awaitable[Any]]


class NodeRPCError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class FakeNode:
    """
    Serves registered async handlers on ``ws://127.0.0.1:<port>``.

    Each request is handled in its own task so slow handlers do not block
    other requests on the same connection, like the real node.
    """

    def __init__(self, handlers: dict[str, Handler] | None = None):
        self.handlers: dict[str, Handler] = dict(handlers or {})
        self.received: list[dict[str, Any]] = []
        self.connections: set = set()
        self._server: websockets.asyncio.server.Server | None = None

    @property
    def endpoint(self) -> str:
        assert self._server is not None
        port = next(iter(self._server.sockets)).getsockname()[1]
        return f"ws://127.0.0.1:{port}/ws"

    async def __aenter__(self) -> FakeNode:
        self._server = await websockets.asyncio.server.serve(self._handle_connection, "127.0.0.1", 0)
        return self

    async def __aexit__(self, *args) -> None:
        assert self._server is not None
        self._server.close()
        await self._server.wait_closed()

    async def send_raw(self, frame: str) -> None:
        """Push an unsolicited frame to every connected client."""
        for websocket in list(self.connections):
            await websocket.send(frame)

    async def _handle_connection(self, websocket) -> None:
        tasks: set[asyncio.Task] = set()
        self.connections.add(websocket)
        try:
            async for message in websocket:
                request = json.loads(message)
                self.received.append(request)
                task = asyncio.create_task(self._answer(websocket, request))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except ConnectionClosed:
            pass
        finally:
            self.connections.discard(websocket)
            for task in tasks:
                task.cancel()

    async def _answer(self, websocket, request: dict[str, Any]) -> None:
        request_id = request.get("id")
        method = request.get("method")
        handler = self.handlers.get(method)
        if handler is None:
            response = {"result": None, "error": {"code": -32601, "message": "Method not found"}, "id": request_id}
        else:
            try:
                result = await handler(request.get("params") or [])
                response = {"result": result, "error": None, "id": request_id}
            except NodeRPCError as exc:
                response = {"result": None, "error": {"code": exc.code, "message": exc.message}, "id": request_id}
        try:
            await websocket.send(json.dumps(response))
        except ConnectionClosed:
            logger.debug("Client went away before response", method=method)
