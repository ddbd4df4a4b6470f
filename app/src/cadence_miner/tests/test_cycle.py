import asyncio
import datetime as dt
from datetime import timedelta

import pytest

from cadence_miner.config import AttemptConfig, MinerConfig, TimingConfig
from cadence_miner.cycle import MiningCycle, truncate
from cadence_miner.rpc import RPCError, TransportError
from cadence_miner.testutils.channel import MockedChannel

NOW = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.UTC)
BEST_HASH = "00000000000000000000000000000000000000000000000000000000deadbeef"


def _config(*, target=timedelta(minutes=2), retry=timedelta(seconds=30)) -> MinerConfig:
    return MinerConfig(
        timing=TimingConfig(target_block_time=target, retry_duration=retry),
        attempt=AttemptConfig(
            deadline=timedelta(seconds=2),
            watchdog=timedelta(milliseconds=50),
            stop_deadline=timedelta(milliseconds=100),
        ),
    )


def _node(tip_age: timedelta) -> MockedChannel:
    header = {"hash": BEST_HASH, "height": 77, "time": int((NOW - tip_age).timestamp())}
    return MockedChannel({"getbestblockhash": BEST_HASH, "getblockheader": header})


def _cycle(channel: MockedChannel, config: MinerConfig | None = None) -> MiningCycle:
    return MiningCycle(channel, config or _config(), clock=lambda: NOW)


def _mine_requests(channel: MockedChannel) -> list:
    return [r for r in channel.requests if r.method == "generate"]


@pytest.mark.asyncio
async def test_young_tip_waits_until_mine_time():
    channel = _node(timedelta(seconds=30))

    next_run = await _cycle(channel).run_once()

    assert next_run == NOW + timedelta(seconds=90)
    assert _mine_requests(channel) == []


@pytest.mark.asyncio
async def test_old_tip_mines_and_waits_full_interval():
    channel = _node(timedelta(minutes=3))
    channel.responses[("generate", 1)] = ["abc123"]

    next_run = await _cycle(channel).run_once()

    assert next_run == NOW + timedelta(minutes=2)
    assert channel.methods()[-1] == ("generate", 1)


@pytest.mark.asyncio
async def test_observation_failures_back_off_without_mining():
    channel = MockedChannel({"getbestblockhash": TransportError("getbestblockhash: connection closed")})
    cycle = _cycle(channel)

    next_runs = [await cycle.run_once(), await cycle.run_once()]

    assert next_runs == [NOW + timedelta(seconds=30), NOW + timedelta(seconds=30)]
    assert _mine_requests(channel) == []
    assert channel.methods() == [("getbestblockhash",), ("getbestblockhash",)]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "retry,expected",
    [
        (timedelta(seconds=30), timedelta(seconds=30)),
        (timedelta(minutes=10), timedelta(minutes=2)),
    ],
)
async def test_mining_failure_backoff_is_bounded_by_target(retry, expected):
    channel = _node(timedelta(minutes=5))
    channel.responses[("generate", 1)] = RPCError("generate", -32603, "no mining address")

    next_run = await _cycle(channel, _config(retry=retry)).run_once()

    assert next_run == NOW + expected
    assert next_run - NOW <= timedelta(minutes=2)


@pytest.mark.asyncio
async def test_expected_failure_after_stop_uses_failure_backoff():
    stopped = asyncio.Event()

    async def generate_one(_request):
        await stopped.wait()
        raise RPCError("generate", -1, "CPU mining stopped")

    def generate_zero(_request):
        stopped.set()

    channel = _node(timedelta(minutes=5))
    channel.responses[("generate", 1)] = generate_one
    channel.responses[("generate", 0)] = generate_zero

    next_run = await _cycle(channel, _config(retry=timedelta(seconds=10))).run_once()

    assert next_run == NOW + timedelta(seconds=10)
    assert [r.params for r in _mine_requests(channel)] == [(1,), (0,)]


@pytest.mark.asyncio
async def test_each_cycle_observes_a_fresh_tip():
    channel = _node(timedelta(seconds=100))
    cycle = _cycle(channel)

    assert await cycle.run_once() == NOW + timedelta(seconds=20)

    # Another miner found a block meanwhile
    channel.responses["getblockheader"] = {"hash": "11" * 32, "height": 78, "time": int(NOW.timestamp())}
    assert await cycle.run_once() == NOW + timedelta(minutes=2)
    assert _mine_requests(channel) == []


@pytest.mark.asyncio
async def test_poll_wake_time_does_not_drift_with_slow_cycle():
    channel = _node(timedelta(seconds=30))
    # Every clock read is two seconds later than the previous one
    ticks = iter(NOW + timedelta(seconds=2 * i) for i in range(10))
    cycle = MiningCycle(channel, _config(), clock=lambda: next(ticks))

    next_run = await cycle.run_once()

    assert next_run == NOW + timedelta(seconds=90)


def test_truncate_to_display_granularity():
    moment = dt.datetime(2026, 3, 1, 12, 0, 1, 987654, tzinfo=dt.UTC)
    assert truncate(moment, timedelta(milliseconds=100)) == dt.datetime(2026, 3, 1, 12, 0, 1, 900000, tzinfo=dt.UTC)
