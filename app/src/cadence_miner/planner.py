"""
Mining schedule planning.

Pure functions: the decision depends only on the observed tip, the target
block time and the current time.
"""

import datetime as dt
import enum
from dataclasses import dataclass
from datetime import timedelta

from .tip import TipObservation


class Action(enum.Enum):
    POLL_AGAIN = "poll_again"
    MINE_NOW = "mine_now"


@dataclass(frozen=True)
class ScheduleDecision:
    action: Action
    wake_at: dt.datetime  # tip time + target block time

    def delay(self, now: dt.datetime) -> timedelta:
        """Time left until ``wake_at``, never negative."""
        return max(self.wake_at - now, timedelta(0))


def plan(tip: TipObservation, target_block_time: timedelta, now: dt.datetime) -> ScheduleDecision:
    """
    Decide whether the next block is due.

    Args:
        tip: freshly observed chain tip
        target_block_time: desired interval between blocks
        now: current time (tz-aware)

    Returns:
        MINE_NOW once ``tip.block_time + target_block_time`` has been reached,
        otherwise POLL_AGAIN with ``wake_at`` set to that instant. The tip may
        move while waiting, so POLL_AGAIN always means observe again first.
    """
    mine_time = tip.block_time + target_block_time
    if mine_time > now:
        return ScheduleDecision(action=Action.POLL_AGAIN, wake_at=mine_time)
    return ScheduleDecision(action=Action.MINE_NOW, wake_at=mine_time)
