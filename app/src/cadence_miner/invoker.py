"""
Single mining attempt against the node.

``generate 1`` can run longer than we are willing to wait, and the websocket
transport has no per-request cancellation. When the request outlives the
watchdog we send ``generate 0``, which disables further mining on the node,
and then keep waiting for the original request: only its own result says
whether a block was found.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from .config import AttemptConfig
from .rpc import ChannelError, RPCChannel

logger = structlog.get_logger(__name__)


class MineRequestError(Exception):
    """The ``generate 1`` request failed.

    ``expected`` is True when the failure followed our own stop request.
    """

    def __init__(self, cause: BaseException, *, expected: bool):
        super().__init__(f"generate: {str(cause) or type(cause).__name__}")
        self.cause = cause
        self.expected = expected


class StopRequestError(Exception):
    """The ``generate 0`` stop request could not be delivered."""

    def __init__(self, cause: BaseException):
        super().__init__(f"generate 0: {str(cause) or type(cause).__name__}")
        self.cause = cause


@dataclass(frozen=True)
class Mined:
    block_hash: str


@dataclass(frozen=True)
class ExpectedFailure:
    """Mining failed after we asked the node to stop; a race, not a fault."""

    error: MineRequestError


@dataclass(frozen=True)
class UnexpectedFailure:
    error: MineRequestError


MiningOutcome = Mined | ExpectedFailure | UnexpectedFailure


async def request_stop(channel: RPCChannel, attempt: AttemptConfig) -> None:
    """Ask the node to stop mining.

    Raises:
        StopRequestError: the request failed or timed out
    """
    try:
        await channel.call("generate", 0, timeout=attempt.stop_deadline.total_seconds())
    except (ChannelError, TimeoutError) as exc:
        raise StopRequestError(exc) from exc


async def mine_block(channel: RPCChannel, attempt: AttemptConfig) -> MiningOutcome:
    """
    Mine one block, stopping the node if the request overruns the watchdog.

    Args:
        channel: RPC channel to the node
        attempt: request deadline, watchdog and stop deadline

    Returns:
        ``Mined`` with the block hash, or a failure outcome carrying the
        ``MineRequestError``. Failures are returned, never raised.
    """
    pending = channel.call_async("generate", 1, timeout=attempt.deadline.total_seconds())
    watchdog = asyncio.create_task(asyncio.sleep(attempt.watchdog.total_seconds()), name="mine-watchdog")
    stop_requested = False

    try:
        done, _ = await asyncio.wait({pending, watchdog}, return_when=asyncio.FIRST_COMPLETED)
        watchdog.cancel()

        if pending not in done:
            logger.info(
                "Mining request outlived watchdog; requesting stop",
                watchdog_seconds=attempt.watchdog.total_seconds(),
            )
            try:
                await request_stop(channel, attempt)
            except StopRequestError as exc:
                # Node may still be mining; the original request decides the outcome
                logger.warning("Stop request failed; remote mining state unknown", error=str(exc))
            else:
                stop_requested = True

        try:
            hashes = await pending
        except (ChannelError, TimeoutError) as exc:
            error = MineRequestError(exc, expected=stop_requested)
            if stop_requested:
                logger.info("Mining request ended after stop request", error=str(error))
                return ExpectedFailure(error)
            logger.error("Mining request failed", error=str(error), error_type=type(exc).__name__)
            return UnexpectedFailure(error)
    except asyncio.CancelledError:
        watchdog.cancel()
        pending.cancel()
        raise

    if not isinstance(hashes, list) or not hashes or not isinstance(hashes[0], str):
        error = MineRequestError(ValueError(f"unexpected generate result {hashes!r}"), expected=False)
        logger.error("Mining request returned no block hash", error=str(error))
        return UnexpectedFailure(error)

    block_hash = hashes[0]
    logger.info("Mined block", block_hash=block_hash, stop_requested=stop_requested)
    return Mined(block_hash)
