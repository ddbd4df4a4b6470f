from __future__ import annotations

import datetime as dt
import socket
from datetime import timedelta

import pytest
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent

from cadence_miner.config import MinerConfig, NodeConfig, StartupConfig, TimingConfig
from cadence_miner.constants import CYCLE_JOB_ID
from cadence_miner.cycle import MiningCycle
from cadence_miner.scheduler import CycleScheduler, StartupError, connect_channel
from cadence_miner.testutils.channel import MockedChannel
from cadence_miner.testutils.node import FakeNode

NOW = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.UTC)


class _RecordingScheduler:
    def __init__(self):
        self.listeners = []
        self.jobs = []

    def add_listener(self, callback, mask):
        self.listeners.append((callback, mask))

    def add_job(self, func, **kwargs):
        self.jobs.append((func, kwargs))


def _runner() -> tuple[CycleScheduler, _RecordingScheduler]:
    config = MinerConfig(timing=TimingConfig(retry_duration=timedelta(seconds=30)))
    cycle = MiningCycle(MockedChannel(), config, clock=lambda: NOW)
    scheduler = _RecordingScheduler()
    return CycleScheduler(cycle, scheduler), scheduler  # type: ignore[arg-type]


def _event(code: int, job_id: str = CYCLE_JOB_ID, **kwargs) -> JobExecutionEvent:
    return JobExecutionEvent(code, job_id, "default", NOW, **kwargs)


def test_listens_for_finished_and_failed_runs():
    _, scheduler = _runner()

    [(_, mask)] = scheduler.listeners
    assert mask == EVENT_JOB_EXECUTED | EVENT_JOB_ERROR


def test_schedule_adds_single_one_shot_job():
    runner, scheduler = _runner()

    runner.schedule(NOW)

    [(func, kwargs)] = scheduler.jobs
    assert func == runner.cycle.run_once
    assert kwargs["id"] == CYCLE_JOB_ID
    assert kwargs["replace_existing"] is True
    assert kwargs["trigger"].run_date == NOW


def test_finished_cycle_reschedules_at_returned_instant():
    runner, scheduler = _runner()
    [(listener, _)] = scheduler.listeners
    wake_at = dt.datetime(2026, 3, 1, 12, 1, 30, tzinfo=dt.UTC)

    listener(_event(EVENT_JOB_EXECUTED, retval=wake_at))

    [(_, kwargs)] = scheduler.jobs
    assert kwargs["trigger"].run_date == wake_at


def test_crashed_cycle_reschedules_after_retry_duration():
    runner, scheduler = _runner()
    [(listener, _)] = scheduler.listeners

    listener(_event(EVENT_JOB_ERROR, exception=RuntimeError("boom")))

    [(_, kwargs)] = scheduler.jobs
    assert kwargs["trigger"].run_date == NOW + timedelta(seconds=30)


def test_other_jobs_are_ignored():
    runner, scheduler = _runner()
    [(listener, _)] = scheduler.listeners

    listener(_event(EVENT_JOB_EXECUTED, job_id="something_else", retval=NOW + timedelta(seconds=1)))

    assert scheduler.jobs == []


def _startup_config(endpoint: str, attempts: int = 2) -> MinerConfig:
    return MinerConfig(
        node=NodeConfig(endpoint=endpoint),
        startup=StartupConfig(connect_attempts=attempts, connect_interval=timedelta(milliseconds=20)),
    )


def _unused_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.mark.asyncio
async def test_connect_channel_probes_readiness():
    async def best_hash(_params):
        return "ab" * 32

    async with FakeNode({"getbestblockhash": best_hash}) as node:
        channel = await connect_channel(_startup_config(node.endpoint))
        async with channel:
            assert await channel.call("getbestblockhash", timeout=1) == "ab" * 32

    assert [r["method"] for r in node.received] == ["getbestblockhash", "getbestblockhash"]


@pytest.mark.asyncio
async def test_connect_channel_gives_up_on_unready_node():
    async with FakeNode() as node:
        with pytest.raises(StartupError, match="not ready after 3 attempts"):
            await connect_channel(_startup_config(node.endpoint, attempts=3))

    assert [r["method"] for r in node.received] == ["getbestblockhash"] * 3


@pytest.mark.asyncio
async def test_connect_channel_gives_up_on_refused_connection():
    endpoint = f"ws://127.0.0.1:{_unused_port()}/ws"

    with pytest.raises(StartupError, match="not ready after 2 attempts"):
        await connect_channel(_startup_config(endpoint))
