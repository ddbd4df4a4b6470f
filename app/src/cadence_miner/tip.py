"""Chain tip sampling."""

import asyncio
import datetime as dt
from dataclasses import dataclass
from datetime import timedelta

import structlog

from .constants import TIP_DEADLINE
from .rpc import ChannelError, RPCChannel

logger = structlog.get_logger(__name__)


class ObservationError(Exception):
    """One of the tip sub-calls failed; ``call`` names which."""

    def __init__(self, call: str, cause: BaseException):
        super().__init__(f"{call}: {str(cause) or type(cause).__name__}")
        self.call = call
        self.cause = cause


@dataclass(frozen=True)
class TipObservation:
    """Best block as seen by the node at poll time."""

    block_hash: str
    height: int | None
    block_time: dt.datetime


async def observe_tip(channel: RPCChannel, timeout: timedelta = TIP_DEADLINE) -> TipObservation:
    """
    Fetch the best block hash and its header under one shared deadline.

    Raises:
        ObservationError: either call failed, timed out, or returned something unusable
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout.total_seconds()

    try:
        block_hash = await channel.call("getbestblockhash", timeout=max(deadline - loop.time(), 0))
        if not isinstance(block_hash, str) or not block_hash:
            raise ValueError(f"unexpected best block hash {block_hash!r}")
    except (ChannelError, TimeoutError, ValueError) as exc:
        raise ObservationError("getbestblockhash", exc) from exc

    try:
        header = await channel.call("getblockheader", block_hash, timeout=max(deadline - loop.time(), 0))
        block_time = dt.datetime.fromtimestamp(int(header["time"]), tz=dt.UTC)
    except (ChannelError, TimeoutError, ValueError, KeyError, TypeError, OverflowError, OSError) as exc:
        raise ObservationError("getblockheader", exc) from exc

    tip = TipObservation(block_hash=block_hash, height=header.get("height"), block_time=block_time)
    logger.debug("Observed chain tip", block_hash=block_hash, height=tip.height, block_time=block_time.isoformat())
    return tip
