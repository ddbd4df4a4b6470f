"""
One pass of the mining schedule: observe the tip, plan, maybe mine.

The cycle never raises for node-side failures; it turns every outcome into
the instant of the next pass.
"""

import datetime as dt
from collections.abc import Callable
from datetime import timedelta

import structlog

from .config import MinerConfig
from .constants import DISPLAY_GRANULARITY
from .invoker import Mined, mine_block
from .planner import Action, plan
from .rpc import RPCChannel
from .tip import ObservationError, observe_tip

logger = structlog.get_logger(__name__)


def utcnow() -> dt.datetime:
    return dt.datetime.now(tz=dt.UTC)


def truncate(moment: dt.datetime, granularity: timedelta) -> dt.datetime:
    """Round ``moment`` down to a multiple of ``granularity`` since the epoch."""
    epoch = dt.datetime(1970, 1, 1, tzinfo=dt.UTC)
    return moment - (moment - epoch) % granularity


class MiningCycle:
    def __init__(self, channel: RPCChannel, config: MinerConfig, *, clock: Callable[[], dt.datetime] = utcnow):
        self.channel = channel
        self.config = config
        self.clock = clock

    async def run_once(self) -> dt.datetime:
        """
        Run a single cycle.

        Returns:
            When the next cycle should start. For POLL_AGAIN this is exactly
            the planned mine time, however long the cycle itself took.
        """
        timing = self.config.timing

        try:
            tip = await observe_tip(self.channel)
        except ObservationError as exc:
            logger.warning(
                "Tip observation failed",
                call=exc.call,
                error=str(exc),
                retry_seconds=timing.retry_duration.total_seconds(),
            )
            return self.clock() + timing.retry_duration

        now = self.clock()
        decision = plan(tip, timing.target_block_time, now)
        logger.info(
            "Best block observed",
            block_hash=tip.block_hash,
            height=tip.height,
            block_time=tip.block_time.isoformat(),
            mine_time=decision.wake_at.isoformat(),
        )

        if decision.action is Action.POLL_AGAIN:
            wait = decision.delay(now)
            logger.info("Sleeping until mining time", seconds=round(wait.total_seconds(), 3))
            return decision.wake_at

        logger.info("Starting miner")
        outcome = await mine_block(self.channel, self.config.attempt)
        if isinstance(outcome, Mined):
            wait = timing.target_block_time
        else:
            wait = timing.failure_backoff

        next_poll = self.clock() + wait
        logger.info(
            "Polling blocks again",
            at=truncate(next_poll, DISPLAY_GRANULARITY).isoformat(),
            outcome=type(outcome).__name__,
        )
        return next_poll
