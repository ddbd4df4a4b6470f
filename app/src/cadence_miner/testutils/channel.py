import asyncio
from dataclasses import dataclass
from typing import Any

from cadence_miner.rpc import RPCError


@dataclass
class Request:
    method: str
    params: tuple[Any, ...]
    timeout: float | None


class MockedChannel:
    """
    In-memory RPC channel.

    ``responses`` maps a method name (or ``(method, *params)`` tuple, which
    wins) to one of:

    - an exception instance, raised to the caller;
    - a callable ``(request) -> value`` or async callable, whose result (or
      raised exception) is used;
    - any other value, returned as the result.

    Methods without a response fail with an ``RPCError`` so that tests notice
    unexpected calls. Every request is recorded in ``requests``.
    """

    def __init__(self, responses: dict[Any, Any] | None = None):
        self.responses: dict[Any, Any] = dict(responses or {})
        self.requests: list[Request] = []

    def methods(self) -> list[tuple[Any, ...]]:
        return [(r.method, *r.params) for r in self.requests]

    async def call(self, method: str, *params: Any, timeout: float | None = None) -> Any:
        request = Request(method=method, params=params, timeout=timeout)
        self.requests.append(request)
        return await asyncio.wait_for(self._respond(request), timeout)

    def call_async(self, method: str, *params: Any, timeout: float | None = None) -> asyncio.Task:
        return asyncio.create_task(self.call(method, *params, timeout=timeout))

    async def _respond(self, request: Request) -> Any:
        key: Any = (request.method, *request.params)
        if key not in self.responses:
            key = request.method
        if key not in self.responses:
            raise RPCError(request.method, -32601, "Method not found")

        response = self.responses[key]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(request)
            if asyncio.iscoroutine(response):
                response = await response
        return response
