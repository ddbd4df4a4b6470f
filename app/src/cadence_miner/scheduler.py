"""
APScheduler setup for the mining cycle.

The cycle runs as a single one-shot job. When a run finishes, a listener
re-adds the job at the instant the cycle returned, so at most one cycle (and
therefore at most one mining request) is ever in flight.
"""

import asyncio
import datetime as dt

import structlog
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from websockets.exceptions import InvalidHandshake, InvalidURI

from .config import MinerConfig
from .constants import CYCLE_JOB_ID
from .cycle import MiningCycle
from .rpc import ChannelError, WebSocketChannel
from .tls import ssl_context_for

logger = structlog.get_logger(__name__)


class StartupError(Exception):
    """The node could not be reached before the scheduler started."""


def create_scheduler() -> AsyncIOScheduler:
    """
    Create the APScheduler instance bound to the running event loop.

    Returns:
        Configured AsyncIOScheduler instance
    """
    job_defaults = {
        "max_instances": 1,  # Never overlap cycles
        "coalesce": True,  # Merge missed runs
        "misfire_grace_time": None,  # A late cycle still runs
    }
    return AsyncIOScheduler(event_loop=asyncio.get_running_loop(), job_defaults=job_defaults, timezone=dt.UTC)


class CycleScheduler:
    """Chains one-shot runs of ``cycle.run_once`` on an APScheduler scheduler."""

    def __init__(self, cycle: MiningCycle, scheduler: AsyncIOScheduler):
        self.cycle = cycle
        self.scheduler = scheduler
        self.scheduler.add_listener(self._on_cycle_finished, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    def schedule(self, run_date: dt.datetime) -> None:
        self.scheduler.add_job(
            self.cycle.run_once,
            trigger=DateTrigger(run_date=run_date, timezone=dt.UTC),
            id=CYCLE_JOB_ID,
            name="Mining Cycle",
            replace_existing=True,
        )

    def _on_cycle_finished(self, event: JobExecutionEvent) -> None:
        if event.job_id != CYCLE_JOB_ID:
            return

        if event.exception is not None:
            # APScheduler already logged the traceback
            retry = self.cycle.config.timing.retry_duration
            logger.error("Mining cycle crashed", error=str(event.exception), retry_seconds=retry.total_seconds())
            run_date = self.cycle.clock() + retry
        else:
            run_date = event.retval

        self.schedule(run_date)


async def connect_channel(config: MinerConfig) -> WebSocketChannel:
    """
    Dial the node and wait until it answers RPC requests.

    Retries up to ``startup.connect_attempts`` times, ``startup.connect_interval`` apart.

    Raises:
        CredentialsError: TLS material could not be loaded
        StartupError: the node never became ready
    """
    ssl_context = ssl_context_for(config.node)
    startup = config.startup
    endpoint = config.node.endpoint
    last_error: Exception | None = None

    for attempt in range(1, startup.connect_attempts + 1):
        if attempt > 1:
            await asyncio.sleep(startup.connect_interval.total_seconds())

        try:
            channel = await WebSocketChannel.connect(endpoint, ssl_context=ssl_context)
        except (OSError, InvalidHandshake, TimeoutError) as exc:
            last_error = exc
            logger.warning(
                "Node connection failed",
                endpoint=endpoint,
                attempt=attempt,
                attempts=startup.connect_attempts,
                error=str(exc) or type(exc).__name__,
            )
            continue

        try:
            best_hash = await channel.call("getbestblockhash", timeout=startup.connect_interval.total_seconds())
        except (ChannelError, TimeoutError) as exc:
            last_error = exc
            logger.warning(
                "Node not ready",
                endpoint=endpoint,
                attempt=attempt,
                attempts=startup.connect_attempts,
                error=str(exc) or type(exc).__name__,
            )
            await channel.close()
            continue

        logger.info("Node ready", endpoint=endpoint, best_block_hash=best_hash)
        return channel

    raise StartupError(f"node at {endpoint} not ready after {startup.connect_attempts} attempts: {last_error}")


async def run_scheduler(config: MinerConfig) -> None:
    """
    Connect to the node and run the mining cycle until cancelled.

    Args:
        config: immutable miner configuration
    """
    try:
        channel = await connect_channel(config)
    except InvalidURI as exc:
        raise StartupError(str(exc)) from exc

    async with channel:
        cycle = MiningCycle(channel, config)
        runner = CycleScheduler(cycle, create_scheduler())
        runner.schedule(cycle.clock())
        runner.scheduler.start()

        logger.info(
            "Miner scheduler started",
            endpoint=config.node.endpoint,
            target_block_time=config.timing.target_block_time.total_seconds(),
            retry_duration=config.timing.retry_duration.total_seconds(),
        )

        try:
            await asyncio.Event().wait()
        finally:
            logger.info("Shutting down scheduler...")
            runner.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
