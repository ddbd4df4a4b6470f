"""
JSON-RPC channel to the node's websocket endpoint.

Requests are multiplexed over one connection; a reader task routes responses
back to waiting callers by request id. There is no way to cancel a request on
the node side short of disconnecting, so a call that times out only stops
waiting locally and its late response is dropped.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import ssl
from typing import Any, Protocol

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

logger = structlog.get_logger(__name__)


class ChannelError(Exception):
    """Base class for failures reported by an RPC channel."""


class RPCError(ChannelError):
    """The node answered the request with a JSON-RPC error object."""

    def __init__(self, method: str, code: int | None, message: str):
        super().__init__(f"{method}: {message} (code {code})")
        self.method = method
        self.code = code
        self.message = message


class TransportError(ChannelError):
    """The connection failed before a response arrived."""


class RPCChannel(Protocol):
    async def call(self, method: str, *params: Any, timeout: float | None = None) -> Any: ...

    def call_async(self, method: str, *params: Any, timeout: float | None = None) -> asyncio.Task: ...


class WebSocketChannel:
    """RPC channel over an established websocket connection.

    Use :meth:`connect` to dial the node; the instance is an async context
    manager that closes the connection and fails outstanding calls on exit.
    """

    def __init__(self, connection: ClientConnection):
        self._connection = connection
        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}
        self._reader = asyncio.create_task(self._read_responses())

    @classmethod
    async def connect(cls, endpoint: str, *, ssl_context: ssl.SSLContext | None = None) -> WebSocketChannel:
        connection = await connect(endpoint, ssl=ssl_context, max_size=None)
        logger.info("Connected to node", endpoint=endpoint)
        return cls(connection)

    async def __aenter__(self) -> WebSocketChannel:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        await self._connection.close()
        await asyncio.gather(self._reader, return_exceptions=True)

    async def call(self, method: str, *params: Any, timeout: float | None = None) -> Any:
        """
        Send one request and wait for its result.

        Args:
            method: JSON-RPC method name
            params: positional parameters
            timeout: seconds to wait for the response (None waits forever)

        Raises:
            RPCError: the node returned an error object
            TransportError: the connection is closed or broke
            TimeoutError: no response within ``timeout``
        """
        return await asyncio.wait_for(self._request(method, list(params)), timeout)

    def call_async(self, method: str, *params: Any, timeout: float | None = None) -> asyncio.Task:
        """Start a request without waiting; the returned task resolves like :meth:`call`."""
        return asyncio.create_task(self.call(method, *params, timeout=timeout), name=f"rpc:{method}")

    async def _request(self, method: str, params: list[Any]) -> Any:
        if self._reader.done():
            raise TransportError(f"{method}: connection closed")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        payload = {"jsonrpc": "1.0", "id": request_id, "method": method, "params": params}
        try:
            await self._connection.send(json.dumps(payload))
        except ConnectionClosed as exc:
            self._pending.pop(request_id, None)
            raise TransportError(f"{method}: {exc}") from exc

        try:
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def _read_responses(self) -> None:
        try:
            async for message in self._connection:
                self._dispatch(message)
        except ConnectionClosed as exc:
            logger.warning("Node connection closed", error=str(exc))
        finally:
            for method, future in self._pending.values():
                if not future.done():
                    future.set_exception(TransportError(f"{method}: connection closed"))
            self._pending.clear()

    def _dispatch(self, message: str | bytes) -> None:
        try:
            response = json.loads(message)
            request_id = response["id"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed response", message=str(message)[:200])
            return
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            logger.warning("Discarding response with invalid id", message=str(message)[:200])
            return

        entry = self._pending.get(request_id)
        if entry is None:
            # Caller gave up (timeout or cancellation) before the node answered
            logger.debug("Discarding response for abandoned request", request_id=request_id)
            return
        method, future = entry
        if future.done():
            return

        error = response.get("error")
        if isinstance(error, dict):
            future.set_exception(RPCError(method, error.get("code"), error.get("message", "unknown error")))
        elif error:
            future.set_exception(RPCError(method, None, str(error)))
        else:
            future.set_result(response.get("result"))
